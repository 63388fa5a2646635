"""Placement of caller parameters into path/query/header/body buckets.

Every declared parameter is optional here. Required-ness is enforced by
the engine when the request arrives. Caller keys that match no
declaration are ignored.
"""

from functools import reduce
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from engine_client.spec.base import ParameterDeclaration


class RequestParams(BaseModel):
    """The four-way partition of an invocation's parameters."""

    path: dict[str, Any] = {}
    query: dict[str, Any] = {}
    header: dict[str, Any] = {}
    body: dict[str, Any] = {}

    def body_value(self) -> Any:
        """The request body: the value of the (single) body declaration, if any."""
        for value in self.body.values():
            return value
        return None


def gather_request_params(
    user_params: Mapping[str, Any], acc: dict[str, dict], declaration: ParameterDeclaration
) -> dict[str, dict]:
    """Place one declared parameter's value into its location bucket.

    Returns a new accumulator; ``acc`` is left untouched. Body values stay
    nested under the declaration's name so a structured document is kept
    whole.
    """
    if declaration.name not in user_params:
        return acc
    bucket = dict(acc.get(declaration.location, {}))
    bucket[declaration.name] = user_params[declaration.name]
    return {**acc, declaration.location: bucket}


def resolve_params(
    declarations: Iterable[ParameterDeclaration], user_params: Mapping[str, Any] | None
) -> RequestParams:
    user_params = user_params or {}
    acc = reduce(lambda a, d: gather_request_params(user_params, a, d), declarations, {})
    return RequestParams(**acc)
