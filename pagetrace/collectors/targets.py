from typing import Dict, List

from .base import BaseCollector, CollectorInitOptions, FinalizationOptions


class TargetCollector(BaseCollector):
    """Lists every target (page, iframe, worker) seen during the crawl."""
    id = "targets"

    def __init__(self):
        self._targets: List[Dict[str, str]] = []

    async def init(self, options: CollectorInitOptions) -> None:
        self._targets = []

    async def add_target(self, session, target_info) -> None:
        self._targets.append({"type": target_info.type, "url": target_info.url})

    async def get_data(self, options: FinalizationOptions) -> List[Dict[str, str]]:
        return list(self._targets)
