"""
network.py - Request/response collector

Listens to the Network domain of every target and produces one record per
request, including each hop of a redirect chain.

Redirect handling: for A -> B -> C Chromium reuses one requestId and emits
requestWillBeSent(A), requestWillBeSent(B, redirectResponse=A's response),
requestWillBeSent(C, redirectResponse=B's response), then responseReceived
for C. The redirectResponse is therefore stored on the previous record with
that id, and the records are linked with redirectedTo/redirectedFrom.

Events that arrive before their requestWillBeSent (responseReceivedExtraInfo
often does) are staged as unmatched and merged in once the request shows up.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

from ..cdp import CDPError
from ..debug import noop_log
from .base import BaseCollector, CollectorInitOptions, FinalizationOptions

# ─── Constants ───────────────────────────────────────────────
DEFAULT_SAVE_HEADERS = [
    "etag", "set-cookie", "cache-control", "expires", "pragma", "p3p",
    "timing-allow-origin", "access-control-allow-origin", "accept-ch",
]


@dataclass
class RequestRecord:
    id: str
    url: str
    type: Optional[str] = None
    method: Optional[str] = None
    initiator: Optional[Dict[str, Any]] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    status: Optional[int] = None
    remote_ip_address: Optional[str] = None
    response_headers: Optional[Dict[str, str]] = None
    response_body_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    size: Optional[int] = None
    redirected_from: Optional[str] = None
    redirected_to: Optional[str] = None
    # fields explicitly set by a handler; merge only fills the others
    _set: Set[str] = field(default_factory=set, repr=False, compare=False)

    def assign(self, **values: Any) -> None:
        for name, value in values.items():
            setattr(self, name, value)
            self._set.add(name)

    def merge_unmatched(self, staged: "RequestRecord") -> None:
        for name in staged._set:
            if name not in self._set:
                self.assign(**{name: getattr(staged, name)})


# ─── Helper functions ───

def normalize_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Lower-case and trim every header name."""
    return {name.lower().strip(): value for name, value in (headers or {}).items()}


def filter_headers(headers: Dict[str, Any], safelist: Iterable[str]) -> Dict[str, Any]:
    """Keep safelisted headers only, sorted by name."""
    allowed = {name.lower() for name in safelist}
    return {name: headers[name] for name in sorted(headers) if name.lower() in allowed}


def _initiators_from_stack(stack: Dict[str, Any]) -> List[str]:
    urls: List[str] = []
    node: Optional[Dict[str, Any]] = stack
    while node:
        urls.extend(frame["url"] for frame in node.get("callFrames", ()) if frame.get("url"))
        node = node.get("parent")
    return urls


def get_all_initiators(initiator: Optional[Dict[str, Any]]) -> List[str]:
    """Unique initiator URLs: the initiator's own url, then every stack frame."""
    if not initiator:
        return []
    urls: List[str] = []
    if initiator.get("url"):
        urls.append(initiator["url"])
    if initiator.get("stack"):
        urls.extend(_initiators_from_stack(initiator["stack"]))
    return list(dict.fromkeys(urls))


class RequestCollector(BaseCollector):
    id = "requests"

    def __init__(self, save_response_hash: bool = True, save_headers: Optional[List[str]] = None):
        """
        @param save_response_hash: Fetch each response body and store its sha256
        @param save_headers: Response headers to keep (DEFAULT_SAVE_HEADERS if None)
        """
        self._save_response_hash = save_response_hash
        self._save_headers = [h.lower() for h in (save_headers or DEFAULT_SAVE_HEADERS)]
        self._requests: List[RequestRecord] = []
        self._unmatched: Dict[str, RequestRecord] = {}
        self._log = noop_log

    async def init(self, options: CollectorInitOptions) -> None:
        self._requests = []
        self._unmatched = {}
        self._log = options.log

    async def add_target(self, session, target_info) -> None:
        session.on("Network.requestWillBeSent", self.handle_request)
        session.on("Network.webSocketCreated", self.handle_websocket)
        session.on("Network.responseReceived", self.handle_response)
        session.on("Network.responseReceivedExtraInfo", self.handle_response_extra_info)
        session.on("Network.loadingFailed", lambda e: self.handle_failed_request(e, session))
        session.on("Network.loadingFinished", lambda e: self.handle_finished_request(e, session))
        await session.send("Network.enable")

    def find_last_request_with_id(self, request_id: str) -> Optional[RequestRecord]:
        for record in reversed(self._requests):
            if record.id == request_id:
                return record
        return None

    def _find_or_stage(self, request_id: str, url: str, type_: Optional[str]) -> RequestRecord:
        record = self.find_last_request_with_id(request_id) or self._unmatched.get(request_id)
        if record is None:
            record = RequestRecord(id=request_id, url=url, type=type_)
            self._unmatched[request_id] = record
        return record

    async def get_response_body_hash(self, request_id: str, session) -> Optional[str]:
        try:
            result = await session.send("Network.getResponseBody", {"requestId": request_id})
        except CDPError:
            return None
        body = result.get("body", "")
        raw = base64.b64decode(body) if result.get("base64Encoded") else body.encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    # ─── Event handlers ───

    def handle_request(self, data: Dict[str, Any]) -> None:
        request_id = data["requestId"]
        request = data["request"]
        url = request["url"]
        method = request.get("method")
        initiator = data.get("initiator") or {}

        # CORS requests report 'parser' as initiator; the preflight has the real one
        if method != "OPTIONS" and initiator.get("type") == "parser":
            for old in reversed(self._requests):
                if old.method == "OPTIONS" and old.url == url:
                    initiator = old.initiator
                    break

        record = RequestRecord(id=request_id, url=url)
        record.assign(method=method, type=data.get("type"), initiator=initiator, start_time=data.get("timestamp"))

        redirect_response = data.get("redirectResponse")
        if redirect_response:
            previous = self.find_last_request_with_id(request_id)
            if previous is not None:
                self.handle_response({"requestId": request_id, "type": data.get("type"), "response": redirect_response})
                previous.assign(end_time=data.get("timestamp"))
                # redirect initiators point at the document, keep the original one
                record.assign(initiator=previous.initiator, redirected_from=previous.url)
                previous.assign(redirected_to=url)

        staged = self._unmatched.pop(request_id, None)
        if staged is not None:
            record.merge_unmatched(staged)

        self._requests.append(record)

    def handle_websocket(self, data: Dict[str, Any]) -> None:
        record = RequestRecord(id=data["requestId"], url=data["url"])
        record.assign(type="WebSocket", initiator=data.get("initiator"))
        self._requests.append(record)

    def handle_response(self, data: Dict[str, Any]) -> None:
        request_id = data["requestId"]
        response = data.get("response") or {}
        record = self.find_last_request_with_id(request_id)
        if record is None:
            self._log("unmatched response", request_id, response.get("url"))
            record = self._find_or_stage(request_id, response.get("url", "<unknown>"), data.get("type"))

        record.assign(
            type=data.get("type") or record.type,
            status=response.get("status"),
            remote_ip_address=response.get("remoteIPAddress"),
        )
        # raw headers from responseReceivedExtraInfo are more complete (set-cookie)
        if record.response_headers is None:
            record.assign(response_headers=normalize_headers(response.get("headers")))

    def handle_response_extra_info(self, data: Dict[str, Any]) -> None:
        record = self._find_or_stage(data["requestId"], "<unknown>", "Other")
        record.assign(response_headers=normalize_headers(data.get("headers")))

    async def handle_failed_request(self, data: Dict[str, Any], session) -> None:
        request_id = data["requestId"]
        if self.find_last_request_with_id(request_id) is None:
            self._log("unmatched failed response", request_id)
        record = self._find_or_stage(request_id, "<unknown>", data.get("type"))
        record.assign(end_time=data.get("timestamp"), failure_reason=data.get("errorText") or "unknown error")
        if self._save_response_hash:
            record.assign(response_body_hash=await self.get_response_body_hash(request_id, session))

    async def handle_finished_request(self, data: Dict[str, Any], session) -> None:
        request_id = data["requestId"]
        if self.find_last_request_with_id(request_id) is None:
            self._log("unmatched finished response", request_id)
        record = self._find_or_stage(request_id, "<unknown>", "Other")
        record.assign(end_time=data.get("timestamp"), size=data.get("encodedDataLength"))
        if self._save_response_hash:
            record.assign(response_body_hash=await self.get_response_body_hash(request_id, session))

    # ─── Output ───

    @staticmethod
    def _is_reportable(url: str, url_filter) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        if not parsed.scheme or parsed.scheme == "data":
            return False
        return url_filter(url) if url_filter else True

    def to_output(self, record: RequestRecord) -> Dict[str, Any]:
        size = record.size
        if isinstance(size, (int, float)) and size < 0:
            size = None
        duration = None
        if record.start_time and record.end_time:
            duration = record.end_time - record.start_time
        return {
            "url": record.url,
            "method": record.method,
            "type": record.type,
            "status": record.status,
            "size": size,
            "remoteIPAddress": record.remote_ip_address,
            "responseHeaders": (
                filter_headers(record.response_headers, self._save_headers)
                if record.response_headers is not None else None
            ),
            "responseBodyHash": record.response_body_hash,
            "failureReason": record.failure_reason,
            "redirectedTo": record.redirected_to,
            "redirectedFrom": record.redirected_from,
            "initiators": get_all_initiators(record.initiator),
            "time": duration,
        }

    async def get_data(self, options: FinalizationOptions) -> List[Dict[str, Any]]:
        if self._unmatched:
            self._log(f"failed to match {len(self._unmatched)} events")
        return [
            self.to_output(record)
            for record in self._requests
            if self._is_reportable(record.url, options.url_filter)
        ]

