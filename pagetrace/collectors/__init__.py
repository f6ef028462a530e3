from typing import Callable, Dict, List, Optional, Sequence

from .api_calls import APICallCollector, IncompleteDataError
from .base import BaseCollector, CollectorInitOptions, FinalizationOptions
from .cookie_popups import CookiePopupCollector
from .cookies import CookieCollector
from .elements import ElementCollector
from .network import RequestCollector
from .targets import TargetCollector

CollectorFactory = Callable[[], BaseCollector]

# Collectors available by id; each crawl gets fresh instances
ALL_COLLECTORS: Dict[str, CollectorFactory] = {
    APICallCollector.id: APICallCollector,
    CookieCollector.id: CookieCollector,
    CookiePopupCollector.id: CookiePopupCollector,
    ElementCollector.id: ElementCollector,
    RequestCollector.id: RequestCollector,
    TargetCollector.id: TargetCollector,
}


def collectors_from_names(names: Optional[Sequence[str]] = None) -> List[CollectorFactory]:
    """
    Resolve collector ids to factories.

    @param names: Collector ids; None or empty selects every collector
    @return: Factories in the requested order
    @raises ValueError: If an id is unknown
    """
    if not names:
        return list(ALL_COLLECTORS.values())
    unknown = [name for name in names if name not in ALL_COLLECTORS]
    if unknown:
        raise ValueError(
            f"Unknown collector(s): {', '.join(unknown)}. "
            f"Available: {', '.join(ALL_COLLECTORS)}"
        )
    return [ALL_COLLECTORS[name] for name in names]


__all__ = [
    "ALL_COLLECTORS",
    "APICallCollector",
    "BaseCollector",
    "CollectorFactory",
    "CollectorInitOptions",
    "CookieCollector",
    "CookiePopupCollector",
    "ElementCollector",
    "FinalizationOptions",
    "IncompleteDataError",
    "RequestCollector",
    "TargetCollector",
    "collectors_from_names",
]
