from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from ..observability.logging import get_logger
from .context import OperationContext
from .marshal import clone

log = get_logger("ddb_pagination")


@dataclass(slots=True)
class PageResult:
    """Merged output of one or more Query/Scan pages (wire items)."""

    items: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0
    scanned_count: int = 0
    last_evaluated_key: dict[str, Any] | None = None
    consumed_capacity: dict[str, Any] | None = None
    pages: int = 0


def merge_capacity(total: dict[str, Any] | None, page: Any) -> dict[str, Any] | None:
    """Add one page's ConsumedCapacity into ``total``; nested index breakdowns included."""
    if not isinstance(page, dict) or not page:
        return total
    out: dict[str, Any] = dict(total or {})
    for k, v in page.items():
        if isinstance(v, bool):
            out[k] = v
        elif isinstance(v, (int, float)):
            cur = out.get(k)
            out[k] = (cur if isinstance(cur, (int, float)) else 0) + v
        elif isinstance(v, dict):
            cur = out.get(k)
            out[k] = merge_capacity(cur if isinstance(cur, dict) else None, v)
        elif k not in out:
            out[k] = v
    return out


class PaginationAccumulator:
    """
    Page callback state for multi-page Query/Scan.

    Counts are page-local on the wire and get summed. ``page_limit`` counts only pages
    that returned items; 0 means no ceiling. Cancellation is checked before each page is
    merged and never discards pages already merged.
    """

    def __init__(self, page_limit: int = 0, ctx: OperationContext | None = None) -> None:
        self.page_limit = max(0, int(page_limit or 0))
        self.ctx = ctx
        self.result = PageResult()
        self.stop_reason: str | None = None

    def on_page(self, page: dict[str, Any], last_page: bool) -> bool:
        """Merge ``page``; True when the next page should be fetched."""
        if self.ctx is not None and self.ctx.done():
            self.stop_reason = self.ctx.reason() or "cancelled"
            return False

        r = self.result
        items = page.get("Items") or []
        r.count += int(page.get("Count") or 0)
        r.scanned_count += int(page.get("ScannedCount") or 0)
        lek = page.get("LastEvaluatedKey")
        r.last_evaluated_key = clone(lek) if lek else None
        r.consumed_capacity = merge_capacity(r.consumed_capacity, page.get("ConsumedCapacity"))

        if items:
            r.items.extend(clone(items))
            r.pages += 1
            if self.page_limit and r.pages >= self.page_limit:
                self.stop_reason = "page_limit"
                return False

        if last_page:
            self.stop_reason = "last_page"
            return False
        return True


def drive_pages(
    fetch_page: Callable[[dict[str, Any] | None], dict[str, Any]],
    start_key: dict[str, Any] | None,
    accumulator: PaginationAccumulator,
) -> PageResult:
    """Fetch pages from ``start_key`` until the accumulator says stop."""
    cursor = clone(start_key) if start_key else None
    while True:
        page = fetch_page(cursor)
        lek = page.get("LastEvaluatedKey")
        if not accumulator.on_page(page, last_page=not lek):
            break
        cursor = clone(lek)
    log.debug(
        "ddb_pages_accumulated",
        pages=accumulator.result.pages,
        count=accumulator.result.count,
        stop_reason=accumulator.stop_reason,
    )
    return accumulator.result


def collect_page_cursors(
    fetch_page: Callable[[dict[str, Any] | None], dict[str, Any]],
    ctx: OperationContext | None = None,
) -> list[dict[str, Any] | None]:
    """
    Start keys for every page: ``[None, lek1, lek2, ...]``.

    Page N (1-based) starts at index N-1. Items are not kept.
    """
    cursors: list[dict[str, Any] | None] = [None]
    cursor: dict[str, Any] | None = None
    while True:
        if ctx is not None and ctx.done():
            log.info("ddb_page_cursors_cancelled", collected=len(cursors), reason=ctx.reason())
            break
        page = fetch_page(cursor)
        lek = page.get("LastEvaluatedKey")
        if not lek:
            break
        cursor = clone(lek)
        cursors.append(clone(lek))
    return cursors

