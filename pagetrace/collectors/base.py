# Base class for collectors, subclass it to add new instrumentation
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..debug import Log, noop_log


@dataclass(frozen=True)
class CollectorInitOptions:
    connection: Any                 # browser-level cdp.Connection
    url: str                        # URL requested for this crawl
    log: Log = noop_log
    collector_flags: Dict[str, str] = field(default_factory=dict)
    browser_context_id: Optional[str] = None


@dataclass(frozen=True)
class FinalizationOptions:
    final_url: str
    url_filter: Optional[Callable[[str], bool]] = None


class BaseCollector:
    id = "base"
    collector_extra_time_ms = 0  # added to the post-load grace period

    async def init(self, options: CollectorInitOptions) -> None:
        """
        Called before the crawl begins. Can raise.
        """
        pass

    async def add_target(self, session, target_info) -> None:
        """
        Called for every new target (main page, iframe, worker) while it is
        still paused. Can raise.

        @param session: cdp.CDPSession attached to the target
        @param target_info: targets.TargetInfo (id, type, url)
        """
        pass

    async def post_load(self) -> None:
        """
        Called after the page has loaded (or timed out).
        """
        pass

    async def get_data(self, options: FinalizationOptions) -> Any:
        """
        Called after the crawl to retrieve the data. Can raise.
        """
        return None
