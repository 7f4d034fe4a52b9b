"""Framework-agnostic request handlers.

Each handler takes the runtime context plus the already-parsed query and body
of a request and returns a :class:`Response`. A web framework, a test or the
CLI can call :func:`dispatch` with ``(method, path)``; no transport code lives
here. Business and referential failures answer 422, malformed input 400,
unknown records 404 and storage failures 500.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Tuple

from . import core_logic, data_manager, log, workflow
from .errors import InnLedgerError


@dataclass(frozen=True)
class Response:
    """Status code and JSON-ready body of a handled request."""

    status: int
    body: Any


def _number(value: Decimal) -> Any:
    return int(value) if value == value.to_integral_value() else float(value)


def to_payload(record: Any) -> Dict[str, Any]:
    """Render a stored record with the field names used on the wire."""

    if isinstance(record, data_manager.TransactionRow):
        return {
            "id": record.transaction_id,
            "mercader": record.counterparty_id,
            "bienes": [{"asset": item.asset_id, "amount": _number(item.amount)} for item in record.items],
            "date": record.date_iso,
            "crownValue": _number(record.crown_value),
            "innBuying": record.inn_buying,
        }
    if isinstance(record, data_manager.AssetRow):
        return {
            "id": record.asset_id,
            "name": record.name,
            "description": record.description,
            "material": record.material,
            "weight": _number(record.weight),
            "crown_value": _number(record.crown_value),
            "type": record.asset_type,
            "amount": _number(record.amount),
        }
    if isinstance(record, data_manager.TraderRow):
        return {"id": record.trader_id, "name": record.name, "type": record.trader_type, "location": record.location}
    if isinstance(record, data_manager.HunterRow):
        return {"id": record.hunter_id, "name": record.name, "race": record.race, "location": record.location}
    raise TypeError(f"Cannot render {type(record).__name__}")


def error_response(error: InnLedgerError) -> Response:
    return Response(status=error.status, body=str(error))


def _guarded(action: Callable[[], Response]) -> Response:
    try:
        return action()
    except InnLedgerError as error:
        return error_response(error)
    except Exception as error:  # transport boundary: nothing escapes a handler
        log.exception("Unhandled error while serving request")
        return Response(status=500, body=str(error))


def _commit(context: core_logic.RuntimeContext, persist: bool) -> None:
    if persist:
        core_logic.persist_context(context)


def _saver(context: core_logic.RuntimeContext, persist: bool) -> Optional[Callable[[], None]]:
    """Save step handed to the transaction workflow, run inside its unit of work."""

    return (lambda: core_logic.persist_context(context)) if persist else None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def post_transaction(context: core_logic.RuntimeContext, body: Optional[Mapping[str, Any]], *, persist: bool = True) -> Response:
    """``POST /transactions``: 201 with the committed transaction."""

    def _run() -> Response:
        record = workflow.create_transaction(context, body, persist=_saver(context, persist))
        return Response(201, to_payload(record))

    return _guarded(_run)


def get_transactions(context: core_logic.RuntimeContext, query: Mapping[str, Any]) -> Response:
    """``GET /transactions?name=`` or ``?firstDay=&lastDay=``."""

    def _run() -> Response:
        if not query.get("name") and not query.get("firstDay"):
            return Response(400, "A trader Name or a date must be provided")
        if query.get("name"):
            rows = workflow.find_transactions_by_name(context, query["name"])
        elif not query.get("lastDay"):
            return Response(400, "A maximun date must be provided")
        else:
            rows = workflow.find_transactions_between(context, query["firstDay"], query["lastDay"])
        return Response(200, [to_payload(row) for row in rows])

    return _guarded(_run)


def get_transaction(context: core_logic.RuntimeContext, transaction_id: str) -> Response:
    """``GET /transactions/{id}``."""

    return _guarded(lambda: Response(200, to_payload(workflow.get_transaction(context, transaction_id))))


def patch_transaction(
    context: core_logic.RuntimeContext,
    transaction_id: str,
    body: Optional[Mapping[str, Any]],
    *,
    persist: bool = True,
) -> Response:
    """``PATCH /transactions/{id}``: answers 201 with the updated record."""

    def _run() -> Response:
        record = workflow.edit_transaction(context, transaction_id, body, persist=_saver(context, persist))
        return Response(201, to_payload(record))

    return _guarded(_run)


def delete_transaction(context: core_logic.RuntimeContext, transaction_id: str, *, persist: bool = True) -> Response:
    """``DELETE /transactions/{id}``: 200 with the removed record."""

    def _run() -> Response:
        record = workflow.delete_transaction(context, transaction_id, persist=_saver(context, persist))
        return Response(200, to_payload(record))

    return _guarded(_run)


# ---------------------------------------------------------------------------
# Traders, hunters and assets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityResource:
    """The store operations behind one simple entity collection."""

    label: str
    add: Callable[..., Any]
    get: Callable[..., Any]
    find: Callable[..., List[Any]]
    update: Callable[..., Any]
    update_where: Callable[..., Any]
    delete: Callable[..., Any]
    delete_where: Callable[..., Any]


TRADERS = EntityResource(
    label="Trader",
    add=core_logic.add_trader,
    get=core_logic.get_trader,
    find=core_logic.find_traders,
    update=core_logic.update_trader,
    update_where=core_logic.update_trader_where,
    delete=core_logic.delete_trader,
    delete_where=core_logic.delete_trader_where,
)

HUNTERS = EntityResource(
    label="Hunter",
    add=core_logic.add_hunter,
    get=core_logic.get_hunter,
    find=core_logic.find_hunters,
    update=core_logic.update_hunter,
    update_where=core_logic.update_hunter_where,
    delete=core_logic.delete_hunter,
    delete_where=core_logic.delete_hunter_where,
)

ASSETS = EntityResource(
    label="Asset",
    add=core_logic.add_asset,
    get=core_logic.get_asset,
    find=core_logic.find_assets,
    update=core_logic.update_asset,
    update_where=core_logic.update_asset_where,
    delete=core_logic.delete_asset,
    delete_where=core_logic.delete_asset_where,
)


def post_entity(
    context: core_logic.RuntimeContext,
    resource: EntityResource,
    body: Optional[Mapping[str, Any]],
    *,
    persist: bool = True,
) -> Response:
    """Create a record: 201. An asset whose name exists is restocked: 200."""

    def _run() -> Response:
        if not body:
            return Response(400, f"{resource.label} characteristics must be given on the body")
        result = resource.add(context, body)
        created = True
        if isinstance(result, tuple):
            result, created = result
        _commit(context, persist)
        return Response(201 if created else 200, to_payload(result))

    return _guarded(_run)


def list_entities(context: core_logic.RuntimeContext, resource: EntityResource, query: Mapping[str, Any]) -> Response:
    """List records, optionally filtered by field equality; 404 when none match."""

    def _run() -> Response:
        rows = resource.find(context, **dict(query))
        if not rows:
            return Response(404, f"No {resource.label.lower()}s found")
        return Response(200, [to_payload(row) for row in rows])

    return _guarded(_run)


def get_entity(context: core_logic.RuntimeContext, resource: EntityResource, record_id: str) -> Response:
    return _guarded(lambda: Response(200, to_payload(resource.get(context, record_id))))


def patch_entity(
    context: core_logic.RuntimeContext,
    resource: EntityResource,
    record_id: str,
    body: Optional[Mapping[str, Any]],
    *,
    persist: bool = True,
) -> Response:
    def _run() -> Response:
        if not body:
            return Response(400, "A body must be provided")
        record = resource.update(context, record_id, body)
        _commit(context, persist)
        return Response(200, to_payload(record))

    return _guarded(_run)


def patch_entity_where(
    context: core_logic.RuntimeContext,
    resource: EntityResource,
    query: Mapping[str, Any],
    body: Optional[Mapping[str, Any]],
    *,
    persist: bool = True,
) -> Response:
    def _run() -> Response:
        if not query:
            return Response(400, "A filter must be given on query")
        if not body:
            return Response(400, "A body must be provided")
        record = resource.update_where(context, dict(query), body)
        _commit(context, persist)
        return Response(200, to_payload(record))

    return _guarded(_run)


def delete_entity(context: core_logic.RuntimeContext, resource: EntityResource, record_id: str, *, persist: bool = True) -> Response:
    def _run() -> Response:
        record = resource.delete(context, record_id)
        _commit(context, persist)
        return Response(200, to_payload(record))

    return _guarded(_run)


def delete_entity_where(
    context: core_logic.RuntimeContext,
    resource: EntityResource,
    query: Mapping[str, Any],
    *,
    persist: bool = True,
) -> Response:
    def _run() -> Response:
        if not query:
            return Response(400, "A filter must be given on query")
        record = resource.delete_where(context, dict(query))
        _commit(context, persist)
        return Response(200, to_payload(record))

    return _guarded(_run)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


Handler = Callable[..., Response]
_RESOURCES = {"traders": TRADERS, "hunters": HUNTERS, "assets": ASSETS}
_COLLECTION = re.compile(r"^/(?P<collection>traders|hunters|assets|transactions)/?$")
_ITEM = re.compile(r"^/(?P<collection>traders|hunters|assets|transactions)/(?P<record_id>[^/]+)/?$")


def _route(method: str, path: str) -> Tuple[Optional[str], Optional[str], Optional[Pattern[str]]]:
    for pattern in (_ITEM, _COLLECTION):
        match = pattern.match(path)
        if match:
            return match.group("collection"), match.groupdict().get("record_id"), pattern
    return None, None, None


def dispatch(
    context: core_logic.RuntimeContext,
    method: str,
    path: str,
    *,
    query: Optional[Mapping[str, Any]] = None,
    body: Optional[Mapping[str, Any]] = None,
    persist: bool = True,
) -> Response:
    """Route ``(method, path)`` to its handler.

    Unknown paths answer 404, unsupported methods on a known path 405.
    """

    query = query or {}
    method = method.upper()
    collection, record_id, pattern = _route(method, path)
    if collection is None:
        return Response(404, f"Cannot {method} {path}")

    if collection == "transactions":
        if pattern is _ITEM:
            handlers: Dict[str, Handler] = {
                "GET": lambda: get_transaction(context, record_id),
                "PATCH": lambda: patch_transaction(context, record_id, body, persist=persist),
                "DELETE": lambda: delete_transaction(context, record_id, persist=persist),
            }
        else:
            handlers = {
                "GET": lambda: get_transactions(context, query),
                "POST": lambda: post_transaction(context, body, persist=persist),
            }
    else:
        resource = _RESOURCES[collection]
        if pattern is _ITEM:
            handlers = {
                "GET": lambda: get_entity(context, resource, record_id),
                "PATCH": lambda: patch_entity(context, resource, record_id, body, persist=persist),
                "DELETE": lambda: delete_entity(context, resource, record_id, persist=persist),
            }
        else:
            handlers = {
                "GET": lambda: list_entities(context, resource, query),
                "POST": lambda: post_entity(context, resource, body, persist=persist),
                "PATCH": lambda: patch_entity_where(context, resource, query, body, persist=persist),
                "DELETE": lambda: delete_entity_where(context, resource, query, persist=persist),
            }

    handler = handlers.get(method)
    if handler is None:
        return Response(405, f"Cannot {method} {path}")
    log.debug("Dispatching %s %s", method, path)
    return handler()
