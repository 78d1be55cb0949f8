"""Bulk dispatch: N item payloads, one HTTP call per chunk.

Items are chunked by ``max_items_per_call``, each chunk is rendered as a JSON
array, CSV or NDJSON body and sent to the action's bulk endpoint, and the
response is mapped back onto the individual items.
"""
import csv
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from .errors import BulkDispatchError
from .rate_limit import BudgetTracker, extract_rate_limit_info
from .schemas import BulkConfig, BulkItemResult, BulkOutcome, BulkResponseMapping, PayloadTransform

logger = logging.getLogger(__name__)

BULK_REQUEST_TIMEOUT_SECONDS = 60.0
RESULT_ARRAY_FIELDS = ("results", "items", "records", "data")
SUCCESS_VALUES = ("true", "Success")


@dataclass
class BulkItem:
    item_id: str
    input: Dict[str, Any]


@dataclass
class BulkDispatchContext:
    integration_id: str
    base_url: str = ""
    auth_headers: Dict[str, str] = field(default_factory=dict)


ChunkCallback = Callable[[List[BulkItemResult]], Awaitable[None]]


# ---------- Payload transforms ----------

def transform_to_array(items: Sequence[BulkItem], wrapper_key: Optional[str] = None) -> str:
    payload: Any = [item.input for item in items]
    if wrapper_key:
        payload = {wrapper_key: payload}
    return json.dumps(payload, separators=(",", ":"))


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def transform_to_csv(items: Sequence[BulkItem]) -> str:
    """Header row from the first item's keys; fields with commas, quotes or newlines are quoted."""
    if not items:
        return ""
    keys = list(items[0].input.keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(keys)
    for item in items:
        writer.writerow([_csv_value(item.input.get(key)) for key in keys])
    return buffer.getvalue().rstrip("\n")


def transform_to_ndjson(items: Sequence[BulkItem]) -> str:
    return "\n".join(json.dumps(item.input, separators=(",", ":")) for item in items)


def build_payload(items: Sequence[BulkItem], bulk_config: BulkConfig) -> Tuple[str, str]:
    """Returns (body, content type)."""
    if bulk_config.payload_transform == PayloadTransform.CSV:
        return transform_to_csv(items), "text/csv"
    if bulk_config.payload_transform == PayloadTransform.NDJSON:
        return transform_to_ndjson(items), "application/x-ndjson"
    return transform_to_array(items, bulk_config.wrapper_key), "application/json"


# ---------- Helpers ----------

def chunk_items(items: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def get_nested_value(obj: Any, path: str) -> Any:
    """Dot-notation lookup (``a.b.c``); None when any step is missing."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def is_success_value(value: Any) -> bool:
    return value is True or value in SUCCESS_VALUES


def map_item_result(item_id: str, element: Any, mapping: BulkResponseMapping) -> BulkItemResult:
    if not isinstance(element, dict):
        return BulkItemResult(item_id=item_id, outcome=BulkOutcome.SUCCEEDED, output={"result": element})

    if is_success_value(get_nested_value(element, mapping.success_field)):
        return BulkItemResult(item_id=item_id, outcome=BulkOutcome.SUCCEEDED, output=element)

    error = get_nested_value(element, mapping.error_field)
    return BulkItemResult(
        item_id=item_id,
        outcome=BulkOutcome.FAILED,
        error=str(error) if error else "Item failed in bulk response",
    )


def _find_result_array(data: Any) -> Optional[list]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for name in RESULT_ARRAY_FIELDS:
            if isinstance(data.get(name), list):
                return data[name]
    return None


def _is_missing(element: Any) -> bool:
    # null, false, 0 and "" all mean the API had nothing for this item
    return element is None or (not isinstance(element, (dict, list)) and not element)


def map_bulk_response(
    items: Sequence[BulkItem],
    data: Any,
    bulk_config: BulkConfig,
    strict: bool = False,
) -> List[BulkItemResult]:
    """Map a parsed bulk response onto the chunk's items, by index.

    When no result array can be found the items are reported as
    MAPPING_UNRESOLVED with the whole body as output. Callers treat that as
    success unless ``strict`` is set, in which case they are failures.
    """
    results = _find_result_array(data)

    if results is None:
        if strict:
            return [
                BulkItemResult(
                    item_id=item.item_id,
                    outcome=BulkOutcome.FAILED,
                    error="Unrecognized bulk response shape",
                )
                for item in items
            ]
        output = data if isinstance(data, dict) else {"result": data}
        return [
            BulkItemResult(item_id=item.item_id, outcome=BulkOutcome.MAPPING_UNRESOLVED, output=output)
            for item in items
        ]

    mapped = []
    for index, item in enumerate(items):
        element = results[index] if index < len(results) else None
        if _is_missing(element):
            mapped.append(BulkItemResult(
                item_id=item.item_id, outcome=BulkOutcome.FAILED, error="No response for item"
            ))
        else:
            mapped.append(map_item_result(item.item_id, element, bulk_config.response_mapping))
    return mapped


# ---------- Dispatcher ----------

class BulkDispatcher:
    def __init__(
        self,
        tracker: BudgetTracker,
        client: Optional[httpx.AsyncClient] = None,
        extract_rate_limit=extract_rate_limit_info,
        strict_mapping: bool = False,
        timeout: float = BULK_REQUEST_TIMEOUT_SECONDS,
    ):
        self.tracker = tracker
        self.client = client
        self.extract_rate_limit = extract_rate_limit
        self.strict_mapping = strict_mapping
        self.timeout = timeout

    async def dispatch(
        self,
        items: Sequence[BulkItem],
        bulk_config: BulkConfig,
        context: BulkDispatchContext,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> List[BulkItemResult]:
        """Send every chunk, waiting for rate limit budget before each one.

        A failed call fails every item of its chunk; later chunks still run.
        """
        if self.client is not None:
            return await self._dispatch_all(self.client, items, bulk_config, context, on_chunk)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._dispatch_all(client, items, bulk_config, context, on_chunk)

    async def _dispatch_all(self, client, items, bulk_config, context, on_chunk):
        all_results: List[BulkItemResult] = []
        for chunk in chunk_items(items, bulk_config.max_items_per_call):
            await self.tracker.acquire_budget(context.integration_id)
            try:
                results = await self.dispatch_chunk(client, chunk, bulk_config, context)
            except Exception as e:
                logger.warning("Bulk call for %d item(s) failed: %s", len(chunk), e)
                message = str(e) or "Bulk API call failed"
                results = [
                    BulkItemResult(item_id=item.item_id, outcome=BulkOutcome.FAILED, error=message)
                    for item in chunk
                ]
            all_results.extend(results)
            if on_chunk is not None:
                await on_chunk(results)
        return all_results

    def endpoint_url(self, bulk_config: BulkConfig, context: BulkDispatchContext) -> str:
        if bulk_config.endpoint.startswith(("http://", "https://")):
            return bulk_config.endpoint
        if not context.base_url:
            return bulk_config.endpoint
        return f"{context.base_url.rstrip('/')}/{bulk_config.endpoint.lstrip('/')}"

    async def dispatch_chunk(
        self,
        client: httpx.AsyncClient,
        items: Sequence[BulkItem],
        bulk_config: BulkConfig,
        context: BulkDispatchContext,
    ) -> List[BulkItemResult]:
        body, content_type = build_payload(items, bulk_config)
        headers = {"Content-Type": content_type, **context.auth_headers}

        response = await client.request(
            bulk_config.http_method,
            self.endpoint_url(bulk_config, context),
            content=body.encode("utf-8"),
            headers=headers,
            timeout=self.timeout,
        )

        info = self.extract_rate_limit(response.headers)
        if info is not None:
            self.tracker.update_from_headers(context.integration_id, info)

        if not response.is_success:
            raise BulkDispatchError(
                f"Bulk API returned {response.status_code}: {response.text}",
                status=response.status_code,
                body=response.text,
            )

        return map_bulk_response(items, response.json(), bulk_config, strict=self.strict_mapping)
