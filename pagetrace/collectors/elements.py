from typing import Any, Dict, Optional

from .base import BaseCollector, CollectorInitOptions, FinalizationOptions

META_REFERRER_EXPRESSION = (
    "(() => { const el = document.querySelector(\"meta[name='referrer']\");"
    " return el ? el.getAttribute('content') : null; })()"
)


class ElementCollector(BaseCollector):
    """Reads page-defined elements such as the referrer policy meta tag."""
    id = "element"

    def __init__(self):
        self._session = None

    async def init(self, options: CollectorInitOptions) -> None:
        self._session = None

    async def add_target(self, session, target_info) -> None:
        # first page target is the crawled page
        if target_info.type == "page" and self._session is None:
            self._session = session

    async def get_data(self, options: FinalizationOptions) -> Dict[str, Optional[Any]]:
        if self._session is None:
            return {"metaReferrer": None}
        result = await self._session.send("Runtime.evaluate", {
            "expression": META_REFERRER_EXPRESSION,
            "returnByValue": True,
        })
        return {"metaReferrer": (result.get("result") or {}).get("value")}
