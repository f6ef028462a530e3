"""
tracker.py - Breakpoint installation and hit processing for one session

A BreakpointTracker is bound to a single target session. It installs a
conditional function-call breakpoint for every catalog member in every
execution context of that target, and turns the two kinds of reports a
breakpoint can produce into CapturedCall values:

- fast path: the condition script found the calling script URL itself and
  reported through the registerAPICall binding (Runtime.bindingCalled);
- slow path: the condition asked the debugger to pause (Debugger.paused) and
  the caller is resolved from the native (async) stack.

Arguments for the slow path arrive early through the binding and wait in a
pending map keyed by breakpoint id until the pause is seen.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..cdp import CDPError, ErrorCategory, is_ignorable
from ..debug import Log, noop_log
from ..utils import TemplateLoader, normalize_url
from .attribution import MAX_ASYNC_CALL_STACK_DEPTH, ScriptResolver
from .catalog import BreakpointDefinition, iter_definitions

# ─── Constants ───────────────────────────────────────────────
BINDING_NAME = "registerAPICall"
CONDITION_TEMPLATE = "breakpoint_condition.js"
ARGUMENT_COLLECTION = "args: Array.from(arguments).map(a => String(a))"


class MemberUnavailableError(CDPError):
    """The catalog member does not exist in the evaluated context."""
    category = ErrorCategory.MEMBER_UNAVAILABLE


@dataclass(frozen=True)
class BreakpointSpec:
    id: str
    description: str
    condition: Optional[str]
    save_arguments: bool
    context_id: Optional[int]
    kind: str


@dataclass(frozen=True)
class CapturedCall:
    description: str
    source: Optional[str]
    arguments: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "description": self.description,
            "arguments": list(self.arguments) if self.arguments is not None else None,
        }


class BreakpointTracker:
    def __init__(
        self,
        session,
        definitions: Optional[Sequence[BreakpointDefinition]] = None,
        templates: Optional[TemplateLoader] = None,
        log: Log = noop_log,
    ):
        """
        @param session: CDP session of the target being instrumented
        @param definitions: Breakpoints to install (defaults to the full catalog)
        @param templates: Loader for the condition script template
        @param log: Per-crawl debug logger
        """
        self._session = session
        self._definitions = list(definitions) if definitions is not None else iter_definitions()
        self._templates = templates or TemplateLoader()
        self._log = log
        self.resolver = ScriptResolver(log=log)

        self._by_id: Dict[str, BreakpointSpec] = {}
        self._by_description: Dict[str, Dict[Optional[int], BreakpointSpec]] = {}
        self._pending: Dict[str, CapturedCall] = {}

    # ─── Setup ───

    def set_main_url(self, url: str) -> None:
        self.resolver.main_url = normalize_url(url)

    async def init(self) -> None:
        await self._session.send("Debugger.enable")
        await self._session.send("Runtime.enable")
        await self._session.send("Runtime.setAsyncCallStackDepth", {"maxDepth": MAX_ASYNC_CALL_STACK_DEPTH})

    def condition_script(self, definition: BreakpointDefinition) -> str:
        """Render the in-page condition for one breakpoint definition."""
        body = self._templates.render(CONDITION_TEMPLATE, {
            "argument_collection": ARGUMENT_COLLECTION if definition.can_save_arguments else "",
            "save_arguments": "true" if definition.save_arguments else "false",
            "binding_name": BINDING_NAME,
            "main_url": json.dumps(self.resolver.main_url),
            "description": json.dumps(definition.description),
        })
        if definition.condition:
            body = f"if (!!({definition.condition})) {{\n{body}\n}}"
        return f"let shouldPause = false;\n{body}\nshouldPause;"

    async def add_breakpoint(self, definition: BreakpointDefinition, context_id: Optional[int] = None) -> Optional[BreakpointSpec]:
        """
        Install one breakpoint in one execution context.

        Ignorable protocol races are swallowed silently; every other protocol
        failure is logged. Neither is raised.

        @return: The installed spec, or None when nothing was installed
        """
        try:
            params: Dict[str, Any] = {"expression": definition.expression, "silent": True}
            if context_id is not None:
                params["contextId"] = context_id
            result = await self._session.send("Runtime.evaluate", params)
            object_id = (result.get("result") or {}).get("objectId")
            if result.get("exceptionDetails") or not object_id:
                raise MemberUnavailableError(f"{definition.description}: API unavailable in given context.")

            response = await self._session.send("Debugger.setBreakpointOnFunctionCall", {
                "objectId": object_id,
                "condition": self.condition_script(definition),
            })
        except CDPError as exc:
            if not is_ignorable(exc):
                self._log("setting breakpoint failed", definition.description, exc)
            return None

        spec = BreakpointSpec(
            id=response["breakpointId"],
            description=definition.description,
            condition=definition.condition,
            save_arguments=definition.save_arguments,
            context_id=context_id,
            kind=definition.kind,
        )
        self._by_id[spec.id] = spec
        self._by_description.setdefault(spec.description, {})[context_id] = spec
        return spec

    async def setup_context_tracking(self, context_id: Optional[int] = None) -> List[BreakpointSpec]:
        """Install every catalog breakpoint in the given context."""
        installed = await asyncio.gather(*(
            self.add_breakpoint(definition, context_id) for definition in self._definitions
        ))
        specs = [spec for spec in installed if spec is not None]
        self._log(f"context {context_id}: {len(specs)} breakpoints installed")
        return specs

    def drop_context(self, context_id: Optional[int]) -> None:
        """Forget breakpoints that belonged to a destroyed context."""
        for breakpoint_id, spec in list(self._by_id.items()):
            if spec.context_id != context_id:
                continue
            del self._by_id[breakpoint_id]
            self._pending.pop(breakpoint_id, None)
            per_context = self._by_description.get(spec.description, {})
            if per_context.get(context_id) is spec:
                del per_context[context_id]
                if not per_context:
                    del self._by_description[spec.description]

    def drop_all_contexts(self) -> None:
        self._by_id.clear()
        self._by_description.clear()
        self._pending.clear()

    # ─── Lookup ───

    def get_by_id(self, breakpoint_id: str) -> Optional[BreakpointSpec]:
        return self._by_id.get(breakpoint_id)

    def get_by_description(self, description: Optional[str], context_id: Optional[int] = None) -> Optional[BreakpointSpec]:
        per_context = self._by_description.get(description or "")
        if not per_context:
            return None
        if context_id in per_context:
            return per_context[context_id]
        return next(iter(per_context.values()))

    # ─── Event processing ───

    def process_script_parsed(self, params: Dict[str, Any]) -> None:
        # embedderName is the script's real resource URL even when sourceURL rewrites url
        self.resolver.add_script(params.get("scriptId", ""), params.get("embedderName") or params.get("url", ""))

    def process_binding_called(self, params: Dict[str, Any]) -> Optional[CapturedCall]:
        """
        Handle a registerAPICall report.

        @return: A complete call for the fast path, None when the report only
                 staged arguments (or was not ours / malformed)
        """
        if params.get("name") != BINDING_NAME:
            return None
        try:
            payload = json.loads(params["payload"])
        except (KeyError, TypeError, ValueError):
            self._log("invalid breakpoint payload", params.get("payload"))
            return None

        spec = self.get_by_description(payload.get("description"), params.get("executionContextId"))
        if spec is None:
            self._log("unknown breakpoint", payload.get("description"))
            return None

        args = payload.get("args")
        arguments = tuple(str(a) for a in args) if isinstance(args, list) else None
        url = payload.get("url")

        if not url:
            if spec.save_arguments:
                if spec.id in self._pending:
                    self._log("replacing unclaimed pending call", spec.id)
                self._pending[spec.id] = CapturedCall(spec.description, None, arguments)
            return None

        return CapturedCall(spec.description, url, arguments if spec.save_arguments else None)

    def process_debugger_pause(self, params: Dict[str, Any]) -> Optional[CapturedCall]:
        """
        Attribute a native pause on one of our breakpoints.

        @return: The captured call, or None for pauses we did not cause
        """
        spec = None
        for breakpoint_id in params.get("hitBreakpoints") or ():
            spec = self._by_id.get(breakpoint_id)
            if spec is not None:
                break
        if spec is None:
            return None

        source = self.resolver.resolve(params)
        if not spec.save_arguments:
            return CapturedCall(spec.description, source)

        pending = self._pending.pop(spec.id, None)
        if pending is None:
            self._log(f"missing call arguments for breakpoint {spec.id}")
            return CapturedCall(spec.description, source)
        return CapturedCall(spec.description, source, pending.arguments)
