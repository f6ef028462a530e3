"""
catalog.py - Sensitive object members watched by the API call collector

Each ApiGroup names an object reachable in the page (a global expression or a
constructor whose prototype holds the members) and the properties/methods on
it. Descriptions default to "<object>.<member>", e.g.
"Navigator.prototype.userAgent" or "window.devicePixelRatio".
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Member:
    name: str
    description: Optional[str] = None
    condition: Optional[str] = None      # JS predicate over `arguments`
    save_arguments: bool = False
    setter: bool = False                 # hook the setter instead of the getter


@dataclass(frozen=True)
class ApiGroup:
    props: Tuple[Member, ...] = ()
    methods: Tuple[Member, ...] = ()
    global_: Optional[str] = None
    proto: Optional[str] = None

    @property
    def obj(self) -> str:
        return self.global_ or f"{self.proto}.prototype"


@dataclass(frozen=True)
class BreakpointDefinition:
    """One installable breakpoint, flattened out of the catalog."""
    expression: str
    description: str
    condition: Optional[str]
    save_arguments: bool
    kind: str  # "getter" | "setter" | "method"

    @property
    def can_save_arguments(self) -> bool:
        return self.kind in ("setter", "method")


def _props(*names: str) -> Tuple[Member, ...]:
    return tuple(Member(name) for name in names)


_methods = _props


# ─── Catalog ─────────────────────────────────────────────────

BREAKPOINTS: Tuple[ApiGroup, ...] = (
    ApiGroup(
        global_="window",
        props=_props("devicePixelRatio", "localStorage", "sessionStorage", "indexedDB", "name"),
        methods=(
            Member("openDatabase"),
            Member(
                "matchMedia",
                description='window.matchMedia("prefers-reduced-motion")',
                condition='arguments.length > 0 && String(arguments[0]).includes("prefers-reduced-motion")',
            ),
            Member(
                "matchMedia",
                description='window.matchMedia("prefers-color-scheme")',
                condition='arguments.length > 0 && String(arguments[0]).includes("prefers-color-scheme")',
            ),
        ),
    ),
    ApiGroup(global_="console", props=_props("memory")),
    ApiGroup(
        # .prototype does not work for FontFaceSet, reach it through the instance
        global_="Reflect.getPrototypeOf(document.fonts)",
        methods=(Member("check", description="document.fonts.check"),),
    ),
    ApiGroup(proto="Performance", props=_props("memory")),
    ApiGroup(proto="PerformanceTiming", props=_props("navigationStart")),
    ApiGroup(
        proto="Document",
        props=(
            Member("cookie", description="Document.cookie getter"),
            Member("cookie", description="Document.cookie setter", setter=True, save_arguments=True),
        ),
        methods=_methods("interestCohort"),
    ),
    ApiGroup(
        proto="Navigator",
        props=_props(
            "appName", "appCodeName", "appVersion", "mimeTypes", "cookieEnabled",
            "language", "languages", "userAgent", "plugins", "platform", "doNotTrack",
            "hardwareConcurrency", "maxTouchPoints", "mediaCapabilities", "mediaDevices",
            "deviceMemory", "connection", "onLine", "keyboard", "permissions",
            "presentation", "product", "productSub", "storage", "vendor", "vendorSub",
            "webdriver", "webkitPersistentStorage", "webkitTemporaryStorage",
        ),
        methods=_methods("getBattery", "getGamepads", "javaEnabled"),
    ),
    ApiGroup(
        proto="Screen",
        props=_props(
            "width", "height", "availWidth", "availHeight", "colorDepth",
            "pixelDepth", "availLeft", "availTop", "orientation",
        ),
    ),
    ApiGroup(proto="HTMLCanvasElement", methods=_methods("constructor", "toDataURL")),
    ApiGroup(
        proto="CanvasRenderingContext2D",
        methods=_methods("measureText", "getImageData", "isPointInPath"),
    ),
    ApiGroup(proto="HTMLMediaElement", methods=_methods("canPlayType")),
    ApiGroup(proto="Date", methods=_methods("getTime", "getTimezoneOffset")),
    ApiGroup(
        proto="WebGLRenderingContext",
        methods=_methods(
            "getSupportedExtensions", "getExtension", "getParameter",
            "getShaderPrecisionFormat", "getContextAttributes",
        ),
    ),
    ApiGroup(proto="OfflineAudioContext", methods=_methods("constructor")),
    ApiGroup(proto="AudioBuffer", methods=_methods("getChannelData")),
    ApiGroup(proto="AudioWorkletNode", methods=_methods("constructor")),
    ApiGroup(proto="RTCPeerConnection", methods=_methods("constructor")),
    ApiGroup(proto="RTCPeerConnectionIceEvent", props=_props("candidate")),
    ApiGroup(proto="SharedWorker", methods=_methods("constructor")),
    ApiGroup(proto="BroadcastChannel", methods=_methods("constructor")),
    ApiGroup(proto="Intl.DateTimeFormat", methods=_methods("resolvedOptions")),
    ApiGroup(proto="TouchEvent", methods=_methods("constructor")),  # mobile only
    ApiGroup(proto="Event", props=_props("timeStamp")),
    ApiGroup(proto="KeyboardEvent", props=_props("code", "keyCode")),
    ApiGroup(global_="MediaSource", methods=_methods("isTypeSupported")),  # static
    ApiGroup(global_="speechSynthesis.__proto__", methods=_methods("getVoices")),
    ApiGroup(proto="Touch", props=_props("force", "radiusX", "radiusY", "rotationAngle")),
    ApiGroup(global_="URL", methods=_methods("createObjectURL")),  # static
    ApiGroup(
        proto="CSSStyleDeclaration",
        methods=(
            Member(
                "setProperty",
                description='CSSStyleDeclaration.setProperty("fontFamily",…)',
                condition='arguments.length > 0 && String(arguments[0]).toLowerCase() === "fontfamily"',
            ),
        ),
    ),
    ApiGroup(proto="Element", methods=_methods("getClientRects")),
    ApiGroup(proto="WheelEvent", props=_props("deltaX", "deltaY", "deltaZ")),
    ApiGroup(proto="Sensor", methods=_methods("constructor", "start")),
    ApiGroup(proto="DeviceOrientationEvent", props=_props("alpha", "beta", "gamma", "absolute")),
    ApiGroup(
        proto="DeviceMotionEvent",
        props=_props("acceleration", "accelerationIncludingGravity", "rotationRate"),
    ),
    ApiGroup(proto="Animation", props=_props("currentTime", "startTime")),
    ApiGroup(global_="Notification", props=_props("permission")),  # static
    ApiGroup(proto="Gyroscope", props=_props("x", "y", "z"), methods=_methods("constructor")),
)


def iter_definitions(groups: Sequence[ApiGroup] = BREAKPOINTS) -> List[BreakpointDefinition]:
    """
    Flatten catalog groups into installable breakpoint definitions.

    @param groups: Catalog to flatten (defaults to BREAKPOINTS)
    @return: Definitions, properties of a group first, then its methods
    """
    definitions: List[BreakpointDefinition] = []
    for group in groups:
        obj = group.obj
        for prop in group.props:
            accessor = "set" if prop.setter else "get"
            definitions.append(BreakpointDefinition(
                expression=f"Reflect.getOwnPropertyDescriptor({obj}, '{prop.name}').{accessor}",
                description=prop.description or f"{obj}.{prop.name}",
                condition=prop.condition,
                save_arguments=prop.save_arguments,
                kind="setter" if prop.setter else "getter",
            ))
        for method in group.methods:
            definitions.append(BreakpointDefinition(
                expression=f"Reflect.getOwnPropertyDescriptor({obj}, '{method.name}').value",
                description=method.description or f"{obj}.{method.name}",
                condition=method.condition,
                save_arguments=method.save_arguments,
                kind="method",
            ))
    return definitions
