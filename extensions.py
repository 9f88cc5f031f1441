from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

HOOK_EVENTS = (
    "program_start",
    "before_statement",
    "before_call",
    "after_call",
    "on_pause",
    "on_error",
    "program_end",
)


class LoopExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]] = None


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in HOOK_EVENTS:
            raise LoopExtensionError(f"Unknown hook event '{event}'")
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def has_handlers(self, event: str) -> bool:
        return bool(self._events.get(event))

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise LoopExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass(frozen=True)
class BuiltinSpec:
    """A host-supplied builtin before it is attached to an interpreter.

    ``impl(interpreter, args, kwargs, location)`` receives evaluated
    arguments and returns a plain value or a wait descriptor. ``suspends``
    documents which of the two the host should expect; the evaluator only
    looks at what comes back.
    """

    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    suspends: bool = False
    doc: str = ""
    keywords: Tuple[str, ...] = ()


@dataclass
class BuiltinRegistry:
    _specs: Dict[str, BuiltinSpec] = field(default_factory=dict)

    def register(self, spec: BuiltinSpec) -> None:
        if not spec.name or not spec.name.isidentifier():
            raise LoopExtensionError(f"Builtin name must be an identifier, got {spec.name!r}")
        if spec.name in self._specs:
            raise LoopExtensionError(f"Builtin '{spec.name}' is already registered")
        if spec.min_args < 0 or (spec.max_args is not None and spec.max_args < spec.min_args):
            raise LoopExtensionError(f"Builtin '{spec.name}' has an invalid arity")
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[BuiltinSpec]:
        return self._specs.get(name)

    def names(self) -> List[str]:
        return sorted(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[BuiltinSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    builtins: BuiltinRegistry = field(default_factory=BuiltinRegistry)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # Enum namespaces are copied into each execution's globals as dicts.
    enums: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    constants: Dict[str, Any] = field(default_factory=dict)

    def global_names(self) -> List[str]:
        return self.builtins.names() + sorted(self.enums) + sorted(self.constants)

    def _ensure_free(self, name: str) -> None:
        if not name or not name.isidentifier():
            raise LoopExtensionError(f"Global name must be an identifier, got {name!r}")
        if name in self.builtins or name in self.enums or name in self.constants:
            raise LoopExtensionError(f"Global '{name}' is already registered")


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    # ---- metadata ----
    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    # ---- builtins ----
    def register_builtin(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: Callable[..., Any],
        *,
        suspends: bool = False,
        doc: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        self._services._ensure_free(name)
        self._services.builtins.register(
            BuiltinSpec(
                name=name,
                min_args=int(min_args),
                max_args=None if max_args is None else int(max_args),
                impl=impl,
                suspends=suspends,
                doc=doc,
                keywords=tuple(keywords),
            )
        )

    def builtin(
        self,
        name: str,
        min_args: int = 0,
        max_args: Optional[int] = None,
        *,
        suspends: bool = False,
        doc: str = "",
        keywords: Sequence[str] = (),
    ):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_builtin(name, min_args, max_args, fn, suspends=suspends, doc=doc or (fn.__doc__ or "").strip(), keywords=keywords)
            return fn

        return deco

    # ---- globals ----
    def register_enum(self, name: str, members: Dict[str, Any]) -> None:
        self._services._ensure_free(name)
        for member in members:
            if not isinstance(member, str) or not member.isidentifier():
                raise LoopExtensionError(f"Enum '{name}' member must be an identifier, got {member!r}")
        self._services.enums[name] = dict(members)

    def register_constant(self, name: str, value: Any) -> None:
        self._services._ensure_free(name)
        self._services.constants[name] = value

    # ---- hooks ----
    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"loop_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise LoopExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise LoopExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def read_loopx(pointer_file: str) -> List[str]:
    if not os.path.exists(pointer_file):
        raise LoopExtensionError(f".loopx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    out: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle.read().splitlines():
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            if not os.path.isabs(line):
                line = os.path.abspath(os.path.join(base_dir, line))
            out.append(line)
    return out


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(".loopx"):
            expanded.extend(read_loopx(p))
        else:
            expanded.append(p)
    return [os.path.abspath(p) for p in expanded]


def register_extension(services: RuntimeServices, module: Any, *, default_name: str) -> ExtensionAPI:
    api_version = getattr(module, "LOOP_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise LoopExtensionError(
            f"Extension {default_name} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "loop_register", None)
    if register is None or not callable(register):
        raise LoopExtensionError(f"Extension {default_name} must define callable loop_register(ext)")
    ext_name = getattr(module, "LOOP_EXTENSION_NAME", default_name)
    ext = ExtensionAPI(services=services, ext_name=str(ext_name))
    register(ext)
    return ext


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    services = services or build_default_services()
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        register_extension(services, module, default_name=os.path.splitext(os.path.basename(path))[0])
    return services
