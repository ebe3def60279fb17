"""
Fail-soft pagination for the storefront API.

Two continuation styles are supported:
- CursorPaginator: GraphQL connections (`pageInfo.hasNextPage` / `endCursor`)
- LinkPaginator:   REST responses with a `Link: <url>; rel="next"` header

A page error stops the loop and keeps the pages already fetched; the result
is marked incomplete. The failed page is never retried. Only a failure on the
very first page propagates.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from storesync.exceptions import StorefrontDataError, StorefrontError
from storesync.observability import get_logger

logger = get_logger(__name__)

_LINK_URL = re.compile(r"<([^>]+)>")


def parse_link_header(header: Optional[str]) -> Optional[str]:
    """
    Extract the `rel="next"` URL from a Link header.

    Returns:
        Next page URL, or None when there is no next page
    """
    if not header:
        return None
    for link in header.split(","):
        if 'rel="next"' in link:
            match = _LINK_URL.search(link)
            if match:
                return match.group(1)
    return None


@dataclass
class PageResult:
    """Items accumulated across pages plus how the loop ended."""

    items: List[Any] = field(default_factory=list)
    pages: int = 0
    complete: bool = True
    error: Optional[str] = None


@dataclass
class RestPage:
    """One REST response: decoded body and the continuation URL."""

    data: Dict[str, Any]
    next_url: Optional[str] = None


class _Paginator:
    """
    Shared page loop.

    Subclasses implement `_fetch(token)` returning `(items, next_token)`;
    a `None` next token ends the loop.
    """

    def __init__(
        self,
        page_delay: float,
        max_pages: int = 200,
        label: str = "collection",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.page_delay = page_delay
        self.max_pages = max_pages
        self.label = label
        self._sleep = sleep

    async def _fetch(self, token: Optional[str]) -> Tuple[List[Any], Optional[str]]:
        raise NotImplementedError

    async def fetch_all(self) -> PageResult:
        """
        Fetch every page.

        Raises:
            StorefrontError: only when the first page fails
        """
        result = PageResult()
        token: Optional[str] = None

        while True:
            page_number = result.pages + 1
            try:
                items, token = await self._fetch(token)
            except StorefrontError as e:
                if result.pages == 0:
                    raise
                logger.error(
                    f"Pagination of {self.label} stopped at page {page_number}: {e}",
                    extra={"label": self.label, "page": page_number, "items_kept": len(result.items)},
                )
                result.complete = False
                result.error = str(e)
                break

            result.items.extend(items)
            result.pages = page_number
            logger.debug(
                f"Fetched {self.label} page {page_number}",
                extra={"label": self.label, "page_items": len(items), "total_items": len(result.items)},
            )

            if token is None:
                break

            if result.pages >= self.max_pages:
                logger.warning(
                    f"Pagination of {self.label} hit max_pages={self.max_pages}",
                    extra={"label": self.label, "items_kept": len(result.items)},
                )
                result.complete = False
                result.error = f"max_pages={self.max_pages} reached"
                break

            if self.page_delay > 0:
                await self._sleep(self.page_delay)

        return result


class CursorPaginator(_Paginator):
    """
    Paginator for GraphQL connections.

    Usage:
        paginator = CursorPaginator(
            lambda cursor: client.graphql(ORDERS_QUERY, {"first": 250, "after": cursor}),
            connection="orders",
        )
        result = await paginator.fetch_all()
    """

    def __init__(
        self,
        fetch_page: Callable[[Optional[str]], Awaitable[Dict[str, Any]]],
        connection: str,
        page_delay: float = 0.3,
        max_pages: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            fetch_page: Async function taking the cursor (None for the first
                page) and returning the GraphQL `data` payload
            connection: Name of the connection field inside `data`
            page_delay: Seconds to wait before requesting the next page
            max_pages: Safety ceiling on the number of pages
        """
        super().__init__(page_delay, max_pages, label=connection, sleep=sleep)
        self.fetch_page = fetch_page
        self.connection = connection

    async def _fetch(self, token: Optional[str]) -> Tuple[List[Any], Optional[str]]:
        data = await self.fetch_page(token)
        block = data.get(self.connection) if isinstance(data, dict) else None
        if not isinstance(block, dict):
            raise StorefrontDataError(
                f"Response missing '{self.connection}' connection",
                expected="object",
                got=type(block).__name__,
            )

        nodes = block.get("nodes") or []
        if not isinstance(nodes, list):
            raise StorefrontDataError(
                f"'{self.connection}.nodes' is not a list",
                expected="list",
                got=type(nodes).__name__,
            )

        page_info = block.get("pageInfo") or {}
        if page_info.get("hasNextPage"):
            cursor = page_info.get("endCursor")
            if not cursor:
                raise StorefrontDataError(
                    f"'{self.connection}' reports more pages without an endCursor",
                    expected="endCursor",
                    got="None",
                )
            return nodes, cursor
        return nodes, None


class LinkPaginator(_Paginator):
    """
    Paginator for REST collections continued through the Link header.

    The first request goes to `first_path`; every following request goes to
    the absolute URL taken from the previous response.
    """

    def __init__(
        self,
        fetch_page: Callable[[str], Awaitable[RestPage]],
        first_path: str,
        items_key: str,
        page_delay: float = 0.25,
        max_pages: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(page_delay, max_pages, label=items_key, sleep=sleep)
        self.fetch_page = fetch_page
        self.first_path = first_path
        self.items_key = items_key

    async def _fetch(self, token: Optional[str]) -> Tuple[List[Any], Optional[str]]:
        page = await self.fetch_page(token or self.first_path)
        items = page.data.get(self.items_key) if isinstance(page.data, dict) else None
        if not isinstance(items, list):
            raise StorefrontDataError(
                f"Response missing '{self.items_key}' list",
                expected="list",
                got=type(items).__name__,
            )
        return items, page.next_url
