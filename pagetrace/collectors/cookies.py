from typing import Any, Dict, List, Optional

from .base import BaseCollector, CollectorInitOptions, FinalizationOptions


def normalize_expires(cdp_date: Optional[float]) -> Optional[int]:
    """CDP reports expiry in seconds (e.g. 1577836800.325027), -1 for session cookies."""
    if cdp_date is None or cdp_date == -1:
        return None
    return int(cdp_date * 1000)


class CookieCollector(BaseCollector):
    id = "cookies"

    def __init__(self):
        self._connection = None
        self._browser_context_id: Optional[str] = None

    async def init(self, options: CollectorInitOptions) -> None:
        self._connection = options.connection
        self._browser_context_id = options.browser_context_id

    async def get_data(self, options: FinalizationOptions) -> List[Dict[str, Any]]:
        params = {"browserContextId": self._browser_context_id} if self._browser_context_id else {}
        result = await self._connection.send("Storage.getCookies", params)
        return [
            {
                "name": cookie.get("name"),
                "domain": cookie.get("domain"),
                "path": cookie.get("path"),
                "expires": normalize_expires(cookie.get("expires")),
                "session": cookie.get("session"),
                "sameSite": cookie.get("sameSite"),
            }
            for cookie in result.get("cookies", [])
        ]
