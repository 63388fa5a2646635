"""Client entry points: categories, client construction, ops, doc, invoke.

A client is bound to one category of operations (``containers``,
``images``, ``_ping``...) and one connection. Operations are looked up in
the engine's published specification when they are invoked, so every
operation the specification describes is available without a
hand-written binding.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from engine_client.dispatch import ResponseHandle, ResponseMode, fetch, resolve_request
from engine_client.errors import ConfigError, SpecLookupError
from engine_client.params import resolve_params
from engine_client.spec.base import Endpoint
from engine_client.spec.index import SpecIndex, default_index
from engine_client.transport.connect import ConnectionDescriptor, connect

logger = logging.getLogger(__name__)


class Invocation(BaseModel):
    """One operation call: what to run, with which params, and how to return it."""

    model_config = ConfigDict(populate_by_name=True)

    op: str
    params: dict[str, Any] = {}
    as_: ResponseMode = Field(default="data", alias="as")
    throw_exception: bool = False
    throw_entire_message: bool = False


def categories(version: str | None = None, index: SpecIndex | None = None) -> set[str]:
    """Return the operation categories of a specification version."""
    return (index or default_index()).categories(version)


def _invalid(what: str, e: ValidationError) -> ConfigError:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or what}: {err['msg']}" for err in e.errors()
    )
    return ConfigError(f"invalid {what}: {problems}")


def _coerce_conn(conn) -> ConnectionDescriptor | None:
    if conn is None or isinstance(conn, ConnectionDescriptor):
        return conn
    try:
        if isinstance(conn, str):
            return ConnectionDescriptor(uri=conn)
        if isinstance(conn, dict):
            return ConnectionDescriptor(**conn)
    except ValidationError as e:
        raise _invalid("connection descriptor", e) from e
    raise ConfigError(f"unsupported connection descriptor: {conn!r}")


@dataclass(frozen=True)
class Client:
    category: str
    conn: ConnectionDescriptor
    api_version: str | None = None
    endpoints: tuple[Endpoint, ...] = ()
    index: SpecIndex = field(default=None, repr=False, compare=False)

    def ops(self) -> list[str]:
        """Operation ids available in this client's category."""
        return [ep.operation_id for ep in self.endpoints]

    def endpoint(self, operation: str) -> Endpoint:
        """The endpoint for ``operation``, or SpecLookupError."""
        endpoint = self.index.request_info_of(self.category, operation, self.api_version)
        if endpoint is None:
            raise SpecLookupError(
                f"operation {operation!r} not found in category {self.category!r} "
                f"(API version {self.api_version or self.index.default_version})"
            )
        return endpoint

    def doc(self, operation: str) -> dict:
        endpoint = self.endpoint(operation)
        return {
            "description": endpoint.summary or endpoint.description,
            "params": [
                {
                    "name": p.name,
                    "location": p.location,
                    "type": p.param_type,
                    "description": p.description,
                }
                for p in endpoint.parameters
            ],
        }

    def invoke(self, invocation: Invocation | dict | str, **kwargs) -> ResponseHandle:
        """Invoke an operation.

        Accepts an ``Invocation``, a dict in the same shape (``as`` may be
        used as a key) or an operation id plus keyword arguments. Lookup
        and configuration errors are raised before any connection is made.
        """
        try:
            if isinstance(invocation, str):
                invocation = Invocation(op=invocation, **kwargs)
            elif isinstance(invocation, dict):
                invocation = Invocation(**invocation)
        except ValidationError as e:
            raise _invalid("invocation", e) from e
        if not invocation.op:
            raise ConfigError("'op' is required in the invocation")

        endpoint = self.endpoint(invocation.op)
        params = resolve_params(endpoint.parameters, invocation.params)
        request = resolve_request(endpoint, params, self.api_version or self.index.default_version)

        logger.debug("Invoking %s on %s", invocation.op, self.conn.uri)
        context = connect(self.conn)
        return fetch(
            request,
            context,
            mode=invocation.as_,
            throw_on_error=invocation.throw_exception,
            throw_full_message=invocation.throw_entire_message,
            owns_context=True,
        )


def client(
    category: str,
    conn: ConnectionDescriptor | dict | str,
    api_version: str | None = None,
    index: SpecIndex | None = None,
) -> Client:
    """Build a client for one category of operations.

    ``conn`` is a ``ConnectionDescriptor``, a dict of its fields, or just a
    URI. The category must exist in the specification version.
    """
    conn = _coerce_conn(conn)
    if not category or conn is None:
        raise ConfigError("'category' and 'conn' are required")

    index = index or default_index()
    category = category.strip("/")
    endpoints = index.get_paths_of_category(category, api_version)
    if not endpoints:
        raise SpecLookupError(
            f"category {category!r} not found in API version {api_version or index.default_version}"
        )
    return Client(
        category=category,
        conn=conn,
        api_version=api_version,
        endpoints=tuple(endpoints),
        index=index,
    )


def ops(c: Client) -> list[str]:
    return c.ops()


def doc(c: Client, operation: str) -> dict:
    return c.doc(operation)


def invoke(c: Client, invocation: Invocation | dict | str, **kwargs) -> ResponseHandle:
    return c.invoke(invocation, **kwargs)
