from .attribution import MAX_ASYNC_CALL_STACK_DEPTH, CallFrame, ScriptResolver, StackTrace
from .catalog import BREAKPOINTS, ApiGroup, BreakpointDefinition, Member, iter_definitions
from .tracker import (
    BINDING_NAME,
    BreakpointSpec,
    BreakpointTracker,
    CapturedCall,
    MemberUnavailableError,
)

__all__ = [
    "MAX_ASYNC_CALL_STACK_DEPTH",
    "CallFrame",
    "ScriptResolver",
    "StackTrace",
    "BREAKPOINTS",
    "ApiGroup",
    "BreakpointDefinition",
    "Member",
    "iter_definitions",
    "BINDING_NAME",
    "BreakpointSpec",
    "BreakpointTracker",
    "CapturedCall",
    "MemberUnavailableError",
]
