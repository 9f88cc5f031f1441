from __future__ import annotations
import json
import math
import sys
import types
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Dict, Generator, List, Optional, Set, Tuple

from lexer import LoopError
from extensions import LoopExtensionError, HookRegistry, RuntimeServices, StepContext, build_default_services
from parser import (
    Assignment,
    BinaryOp,
    BreakStatement,
    CallExpression,
    ClassDef,
    ContinueStatement,
    DictLiteral,
    Expression,
    ExpressionStatement,
    ForStatement,
    FuncDef,
    GlobalStatement,
    Identifier,
    IfStatement,
    ImportStatement,
    IndexExpression,
    LambdaExpression,
    ListComprehension,
    ListLiteral,
    Literal,
    MemberExpression,
    PassStatement,
    Program,
    ReturnStatement,
    SliceExpression,
    SourceLocation,
    Statement,
    TupleLiteral,
    UnaryOp,
    WhileStatement,
)


DEFAULT_BUDGET = 100
MAX_CALL_DEPTH = 1000

# Generator frames one LOOP call can hold on the resume path.
_FRAMES_PER_CALL = 12


class LoopRuntimeError(LoopError):
    """Raised for runtime faults."""

    kind = "Runtime"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message, location.line if location else None)
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None

    def attach(self, location: Optional[SourceLocation]) -> None:
        if self.location is None and location is not None:
            self.location = location
            self.line = location.line

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["rule"] = self.rule
        data["failing_step_index"] = self.step_index
        return data


# ---- suspension and control flow ----


@dataclass(frozen=True)
class WaitSeconds:
    seconds: float


@dataclass(frozen=True)
class WaitUntil:
    predicate: Callable[[], bool]


WAIT_TYPES = (WaitSeconds, WaitUntil)


@dataclass(frozen=True)
class Pause:
    # None is a budget pause; otherwise the wait descriptor a builtin returned.
    wait: Optional[Any] = None


class Flow(Enum):
    NORMAL = "normal"
    BREAK = "break"
    CONTINUE = "continue"
    RETURN = "return"


@dataclass(frozen=True)
class Outcome:
    flow: Flow
    value: Any = None


NORMAL = Outcome(Flow.NORMAL)
BREAK = Outcome(Flow.BREAK)
CONTINUE = Outcome(Flow.CONTINUE)

Runner = Generator[Pause, None, Any]


# ---- scope ----


@dataclass(eq=False)
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Any] = field(default_factory=dict, repr=False)

    def _find_env(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def get(self, name: str, location: Optional[SourceLocation] = None) -> Any:
        env = self._find_env(name)
        if env is None:
            raise LoopRuntimeError(f"Undefined variable '{name}'", location=location, rule="lookup")
        return env.values[name]

    def define(self, name: str, value: Any) -> None:
        self.values[name] = value

    def assign(self, name: str, value: Any) -> None:
        env = self._find_env(name)
        (env or self).values[name] = value

    def root(self) -> "Environment":
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def set_global(self, name: str, value: Any) -> None:
        self.root().values[name] = value

    def snapshot(self) -> Dict[str, str]:
        return {
            name: to_display(value)
            for name, value in self.values.items()
            if not isinstance(value, BuiltinFunction)
        }


# ---- callables ----

BuiltinImpl = Callable[["Interpreter", List[Any], Dict[str, Any], Optional[SourceLocation]], Any]


@dataclass(eq=False)
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl = field(repr=False)
    suspends: bool = False
    doc: str = ""
    keywords: Tuple[str, ...] = ()

    def validate(self, supplied: int, kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> None:
        if supplied < self.min_args:
            raise LoopRuntimeError(f"{self.name}() expects at least {self.min_args} arguments but got {supplied}", location=location, rule=self.name)
        if self.max_args is not None and supplied > self.max_args:
            raise LoopRuntimeError(f"{self.name}() expects at most {self.max_args} arguments but got {supplied}", location=location, rule=self.name)
        for key in kwargs:
            if key not in self.keywords:
                raise LoopRuntimeError(f"{self.name}() got an unexpected keyword argument '{key}'", location=location, rule=self.name)


@dataclass(eq=False)
class Function:
    name: str
    params: List[str]
    body: List[Statement] = field(repr=False)
    closure: Environment = field(repr=False)


@dataclass(eq=False)
class Lambda:
    params: List[str]
    body: Expression = field(repr=False)
    closure: Environment = field(repr=False)


@dataclass(eq=False)
class LoopClass:
    name: str
    methods: Dict[str, Function] = field(default_factory=dict)


@dataclass(eq=False)
class Instance:
    cls: LoopClass
    fields: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(eq=False)
class BoundMethod:
    instance: Instance
    function: Function


# ---- value helpers ----


def is_number(value: Any) -> bool:
    return isinstance(value, (float, int))


def type_name(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (float, int)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "dict"
    if isinstance(value, BuiltinFunction):
        return "builtin function"
    if isinstance(value, Function):
        return "function"
    if isinstance(value, Lambda):
        return "lambda"
    if isinstance(value, LoopClass):
        return "class"
    if isinstance(value, Instance):
        return value.cls.name
    if isinstance(value, BoundMethod):
        return "method"
    return type(value).__name__


def format_number(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value == math.floor(value):
        return str(int(value))
    return repr(value)


def to_display(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (float, int)):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "[" + ", ".join(to_display(item) for item in value) + "]"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{to_display(k)}: {to_display(v)}" for k, v in value.items()) + "}"
    if isinstance(value, BuiltinFunction):
        return f"<built-in function {value.name}>"
    if isinstance(value, Function):
        return f"<function {value.name}>"
    if isinstance(value, Lambda):
        return "<lambda>"
    if isinstance(value, LoopClass):
        return f"<class {value.name}>"
    if isinstance(value, Instance):
        return f"<{value.cls.name} object>"
    if isinstance(value, BoundMethod):
        return f"<bound method {value.instance.cls.name}.{value.function.name}>"
    return str(value)


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (float, int)):
        return value != 0
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def compare_values(left: Any, right: Any, location: Optional[SourceLocation] = None) -> int:
    """Ordered comparison shared by ``< > <= >=``, ``min``/``max`` and ``sorted``.

    Numbers compare numerically, strings lexically, and lists element by
    element with the shorter list first on a common prefix. Any other pairing
    is a runtime error.
    """
    if is_number(left) and is_number(right):
        return (left > right) - (left < right)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    if isinstance(left, list) and isinstance(right, list):
        for a, b in zip(left, right):
            result = compare_values(a, b, location)
            if result != 0:
                return result
        return (len(left) > len(right)) - (len(left) < len(right))
    raise LoopRuntimeError(
        f"Cannot compare {type_name(left)} and {type_name(right)}",
        location=location,
        rule="compare",
    )


def values_identical(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return left is right


def require_hashable(key: Any, location: Optional[SourceLocation]) -> None:
    if isinstance(key, (list, dict)):
        raise LoopRuntimeError(f"Unhashable key type '{type_name(key)}'", location=location, rule="dict")


def to_number(value: Any, location: Optional[SourceLocation], rule: str) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise LoopRuntimeError(f"Cannot convert string '{value}' to number", location=location, rule=rule) from None
    raise LoopRuntimeError(f"Cannot convert {type_name(value)} to number", location=location, rule=rule)


def to_int(value: Any, location: Optional[SourceLocation], rule: str) -> int:
    number = to_number(value, location, rule)
    if not math.isfinite(number):
        raise LoopRuntimeError(f"Cannot convert {format_number(number)} to integer", location=location, rule=rule)
    return math.trunc(number)


# ---- state log and frames ----


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    rule: str
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_entry: Optional[StateEntry] = None
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            rule=rule,
            env_snapshot=env_snapshot,
        )
        # Only verbose runs keep the full history; tracebacks need just the tail per frame.
        if self.verbose:
            self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_entry = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)


# ---- core builtins ----


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register_custom("print", 0, None, self._print, doc="Write the arguments, space separated, to the output sink.")
        self._register_custom("sleep", 1, 1, self._sleep, suspends=True, doc="Suspend the program for a number of seconds.")
        self._register_custom("range", 1, 3, self._range)
        self._register_custom("len", 1, 1, self._len)
        self._register_custom("str", 1, 1, self._str)
        self._register_custom("int", 1, 1, self._int)
        self._register_custom("float", 1, 1, self._float)
        self._register_custom("abs", 1, 1, self._abs)
        self._register_custom("min", 1, None, self._min)
        self._register_custom("max", 1, None, self._max)
        self._register_custom("sum", 1, 1, self._sum)
        self._register_custom("sorted", 1, 3, self._sorted, keywords=("key", "reverse"))

    def _register_custom(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
        *,
        suspends: bool = False,
        doc: str = "",
        keywords: Tuple[str, ...] = (),
    ) -> None:
        self.table[name] = BuiltinFunction(
            name=name,
            min_args=min_args,
            max_args=max_args,
            impl=impl,
            suspends=suspends,
            doc=doc,
            keywords=keywords,
        )

    def register_extension_builtin(self, builtin: BuiltinFunction) -> None:
        if builtin.name in self.table:
            raise LoopExtensionError(f"Cannot override existing builtin '{builtin.name}'")
        self.table[builtin.name] = builtin

    # Helpers
    def _expect_number(self, value: Any, rule: str, location: Optional[SourceLocation]) -> float:
        if not is_number(value):
            raise LoopRuntimeError(f"{rule}() expects a number but got {type_name(value)}", location=location, rule=rule)
        return float(value)

    def _print(self, interpreter: "Interpreter", args: List[Any], _: Dict[str, Any], __: Optional[SourceLocation]) -> None:
        interpreter.output_sink(" ".join(to_display(arg) for arg in args))
        return None

    def _sleep(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> WaitSeconds:
        seconds = self._expect_number(args[0], "sleep", location)
        if seconds < 0 or not math.isfinite(seconds):
            raise LoopRuntimeError("sleep() expects a non-negative duration", location=location, rule="sleep")
        return WaitSeconds(seconds)

    def _range(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> List[float]:
        bounds = [to_int(arg, location, "range") for arg in args]
        start, step = 0, 1
        if len(bounds) == 1:
            stop = bounds[0]
        elif len(bounds) == 2:
            start, stop = bounds
        else:
            start, stop, step = bounds
        if step == 0:
            raise LoopRuntimeError("range() step must not be zero", location=location, rule="range")
        return [float(i) for i in range(start, stop, step)]

    def _len(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> float:
        value = args[0]
        if isinstance(value, (list, str, dict)):
            return float(len(value))
        raise LoopRuntimeError(f"Object of type '{type_name(value)}' has no len()", location=location, rule="len")

    def _str(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], ___: Optional[SourceLocation]) -> str:
        return to_display(args[0])

    def _int(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> float:
        return float(to_int(args[0], location, "int"))

    def _float(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> float:
        return to_number(args[0], location, "float")

    def _abs(self, _: "Interpreter", args: List[Any], __: Dict[str, Any], location: Optional[SourceLocation]) -> float:
        return abs(self._expect_number(args[0], "abs", location))

    def _extreme(self, interpreter: "Interpreter", rule: str, args: List[Any], location: Optional[SourceLocation], sign: int) -> Any:
        items = interpreter.iterate(args[0], location) if len(args) == 1 else list(args)
        if not items:
            raise LoopRuntimeError(f"{rule}() arg is an empty sequence", location=location, rule=rule)
        best = items[0]
        for item in items[1:]:
            if compare_values(item, best, location) * sign > 0:
                best = item
        return best

    def _min(self, interpreter: "Interpreter", args: List[Any], _: Dict[str, Any], location: Optional[SourceLocation]) -> Any:
        return self._extreme(interpreter, "min", args, location, -1)

    def _max(self, interpreter: "Interpreter", args: List[Any], _: Dict[str, Any], location: Optional[SourceLocation]) -> Any:
        return self._extreme(interpreter, "max", args, location, 1)

    def _sum(self, interpreter: "Interpreter", args: List[Any], _: Dict[str, Any], location: Optional[SourceLocation]) -> float:
        total = 0.0
        for item in interpreter.iterate(args[0], location):
            total += self._expect_number(item, "sum", location)
        return total

    def _sorted(self, interpreter: "Interpreter", args: List[Any], kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> Runner:
        for index, name in ((1, "key"), (2, "reverse")):
            if name in kwargs and len(args) > index:
                raise LoopRuntimeError(f"sorted() got multiple values for argument '{name}'", location=location, rule="sorted")
        items = interpreter.iterate(args[0], location)
        key = args[1] if len(args) > 1 else kwargs.get("key")
        reverse = is_truthy(args[2] if len(args) > 2 else kwargs.get("reverse", False))
        if key is None:
            keys = items
        else:
            # Keys are computed once per element; the key callable may suspend.
            keys = []
            for item in items:
                keys.append((yield from interpreter.call(key, [item], {}, location)))
        order = sorted(
            range(len(items)),
            key=cmp_to_key(lambda i, j: compare_values(keys[i], keys[j], location)),
            reverse=reverse,
        )
        return [items[i] for i in order]


# ---- interpreter ----


class Interpreter:
    def __init__(
        self,
        *,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        budget: int = DEFAULT_BUDGET,
        verbose: bool = False,
    ) -> None:
        if budget < 1:
            raise ValueError("budget must be >= 1")
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text))
        self.budget = budget
        self.verbose = verbose
        self.builtins = Builtins()

        # Attach host-supplied builtins. They are appended to the builtins
        # table but cannot override a core builtin.
        for spec in self.services.builtins:
            self.builtins.register_extension_builtin(
                BuiltinFunction(
                    name=spec.name,
                    min_args=spec.min_args,
                    max_args=spec.max_args,
                    impl=spec.impl,
                    suspends=spec.suspends,
                    doc=spec.doc,
                    keywords=spec.keywords,
                )
            )

        self.global_env = Environment()
        for name, builtin in self.builtins.table.items():
            self.global_env.define(name, builtin)
        for name, members in self.services.enums.items():
            self.global_env.define(name, dict(members))
        for name, value in self.services.constants.items():
            self.global_env.define(name, value)

        self.global_names: Set[str] = set()
        self.instruction_count = 0
        self.current_location: Optional[SourceLocation] = None
        self.logger = StateLogger(verbose=verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0

    # ---- program ----

    def run_program(self, program: Program) -> Runner:
        # Frames left behind by an earlier failed run are discarded.
        self.call_stack.clear()
        global_frame = self._new_frame("<module>", self.global_env, None)
        self.call_stack.append(global_frame)
        try:
            self._emit_event("program_start", self, program, self.global_env)
            outcome = yield from self._execute_block(program.statements, self.global_env)
            if outcome.flow is not Flow.NORMAL:
                raise self._stray_flow(outcome, self.current_location)
        except LoopRuntimeError as error:
            error.attach(self.current_location)
            self._stamp(error)
            self._emit_event("on_error", self, error)
            raise
        except RecursionError:
            wrapped = LoopRuntimeError("Maximum recursion depth exceeded", location=self.current_location, rule="call")
            self._stamp(wrapped)
            self._emit_event("on_error", self, wrapped)
            raise wrapped from None
        except Exception as exc:
            # Convert unexpected Python-level exceptions into LoopRuntimeError
            # so hosts can report them like any other program failure.
            wrapped = LoopRuntimeError(f"Internal interpreter error: {exc}", location=self.current_location, rule="internal")
            self._stamp(wrapped)
            self._emit_event("on_error", self, wrapped)
            raise wrapped from exc
        self._emit_event("program_end", self)
        self.call_stack.pop()

    def _stamp(self, error: LoopRuntimeError) -> None:
        if self.logger.last_entry is not None:
            error.step_index = self.logger.last_entry.step_index

    def _stray_flow(self, outcome: Outcome, location: Optional[SourceLocation]) -> LoopRuntimeError:
        if outcome.flow is Flow.RETURN:
            return LoopRuntimeError("'return' outside function", location=location, rule="return")
        keyword = "break" if outcome.flow is Flow.BREAK else "continue"
        return LoopRuntimeError(f"'{keyword}' outside loop", location=location, rule=keyword)

    def _tick(self) -> Runner:
        self.instruction_count += 1
        if self.instruction_count >= self.budget:
            self.instruction_count = 0
            yield Pause()

    # ---- statements ----

    def _execute_block(self, statements: List[Statement], env: Environment) -> Runner:
        execute_stmt = self._execute_statement
        for statement in statements:
            outcome = yield from execute_stmt(statement, env)
            if outcome.flow is not Flow.NORMAL:
                return outcome
        return NORMAL

    def _execute_statement(self, statement: Statement, env: Environment) -> Runner:
        yield from self._tick()
        self.current_location = statement.location
        self._emit_event("before_statement", self, statement, env)
        self._log_step(rule=statement.__class__.__name__, location=statement.location)
        if isinstance(statement, ExpressionStatement):
            yield from self._evaluate(statement.expression, env)
            return NORMAL
        if isinstance(statement, Assignment):
            yield from self._execute_assignment(statement, env)
            return NORMAL
        if isinstance(statement, IfStatement):
            condition = yield from self._evaluate(statement.condition, env)
            if is_truthy(condition):
                return (yield from self._execute_block(statement.body, env))
            if statement.else_body is not None:
                return (yield from self._execute_block(statement.else_body, env))
            return NORMAL
        if isinstance(statement, WhileStatement):
            return (yield from self._execute_while(statement, env))
        if isinstance(statement, ForStatement):
            return (yield from self._execute_for(statement, env))
        if isinstance(statement, FuncDef):
            env.define(statement.name, Function(name=statement.name, params=statement.params, body=statement.body, closure=env))
            return NORMAL
        if isinstance(statement, ClassDef):
            methods = {
                method.name: Function(name=method.name, params=method.params, body=method.body, closure=env)
                for method in statement.methods
            }
            env.define(statement.name, LoopClass(name=statement.name, methods=methods))
            return NORMAL
        if isinstance(statement, ReturnStatement):
            value = None
            if statement.expression is not None:
                value = yield from self._evaluate(statement.expression, env)
            return Outcome(Flow.RETURN, value)
        if isinstance(statement, BreakStatement):
            return BREAK
        if isinstance(statement, ContinueStatement):
            return CONTINUE
        if isinstance(statement, PassStatement):
            return NORMAL
        if isinstance(statement, GlobalStatement):
            self.global_names.update(statement.names)
            return NORMAL
        if isinstance(statement, ImportStatement):
            namespace = env.get(statement.name, statement.location)
            if statement.member is not None:
                self._get_member(namespace, statement.member, statement.location)
            return NORMAL
        raise LoopRuntimeError(f"Unsupported statement {statement.__class__.__name__}", location=statement.location)

    def _execute_while(self, statement: WhileStatement, env: Environment) -> Runner:
        while True:
            condition = yield from self._evaluate(statement.condition, env)
            if not is_truthy(condition):
                return NORMAL
            outcome = yield from self._execute_block(statement.body, env)
            if outcome.flow is Flow.BREAK:
                return NORMAL
            if outcome.flow is Flow.RETURN:
                return outcome

    def _execute_for(self, statement: ForStatement, env: Environment) -> Runner:
        iterable = yield from self._evaluate(statement.iterable, env)
        for item in self.iterate(iterable, statement.location):
            self._assign_name(statement.variable, item, env)
            outcome = yield from self._execute_block(statement.body, env)
            if outcome.flow is Flow.BREAK:
                break
            if outcome.flow is Flow.RETURN:
                return outcome
        return NORMAL

    def _execute_assignment(self, statement: Assignment, env: Environment) -> Runner:
        target = statement.target
        location = statement.location
        operator = statement.operator
        if isinstance(target, Identifier):
            if operator == "=":
                value = yield from self._evaluate(statement.expression, env)
            else:
                current = env.get(target.name, target.location)
                rhs = yield from self._evaluate(statement.expression, env)
                value = self._binary(operator[:-1], current, rhs, location)
            self._assign_name(target.name, value, env)
            return
        if isinstance(target, MemberExpression):
            base = yield from self._evaluate(target.base, env)
            if not isinstance(base, Instance):
                raise LoopRuntimeError(f"Cannot set attribute on {type_name(base)}", location=location, rule="member")
            if operator == "=":
                value = yield from self._evaluate(statement.expression, env)
            else:
                current = self._get_member(base, target.name, location)
                rhs = yield from self._evaluate(statement.expression, env)
                value = self._binary(operator[:-1], current, rhs, location)
            base.fields[target.name] = value
            return
        if isinstance(target, IndexExpression):
            base = yield from self._evaluate(target.base, env)
            index = yield from self._evaluate(target.index, env)
            if operator == "=":
                value = yield from self._evaluate(statement.expression, env)
            else:
                current = self._get_index(base, index, location)
                rhs = yield from self._evaluate(statement.expression, env)
                value = self._binary(operator[:-1], current, rhs, location)
            self._set_index(base, index, value, location)
            return
        raise LoopRuntimeError("Invalid assignment target", location=location, rule="assign")

    def _assign_name(self, name: str, value: Any, env: Environment) -> None:
        if name in self.global_names:
            env.set_global(name, value)
        else:
            env.assign(name, value)

    # ---- expressions ----

    def _evaluate(self, expression: Expression, env: Environment) -> Runner:
        yield from self._tick()
        if isinstance(expression, Literal):
            return expression.value
        if isinstance(expression, Identifier):
            return env.get(expression.name, expression.location)
        if isinstance(expression, BinaryOp):
            operator = expression.operator
            left = yield from self._evaluate(expression.left, env)
            if operator == "and":
                if not is_truthy(left):
                    return left
                return (yield from self._evaluate(expression.right, env))
            if operator == "or":
                if is_truthy(left):
                    return left
                return (yield from self._evaluate(expression.right, env))
            right = yield from self._evaluate(expression.right, env)
            return self._binary(operator, left, right, expression.location)
        if isinstance(expression, UnaryOp):
            operand = yield from self._evaluate(expression.operand, env)
            return self._unary(expression.operator, operand, expression.location)
        if isinstance(expression, CallExpression):
            callee = yield from self._evaluate(expression.callee, env)
            args: List[Any] = []
            kwargs: Dict[str, Any] = {}
            for argument in expression.args:
                value = yield from self._evaluate(argument.expression, env)
                if argument.name is None:
                    args.append(value)
                else:
                    kwargs[argument.name] = value
            return (yield from self.call(callee, args, kwargs, expression.location))
        if isinstance(expression, IndexExpression):
            base = yield from self._evaluate(expression.base, env)
            index = yield from self._evaluate(expression.index, env)
            return self._get_index(base, index, expression.location)
        if isinstance(expression, SliceExpression):
            return (yield from self._evaluate_slice(expression, env))
        if isinstance(expression, MemberExpression):
            base = yield from self._evaluate(expression.base, env)
            return self._get_member(base, expression.name, expression.location)
        if isinstance(expression, (ListLiteral, TupleLiteral)):
            items: List[Any] = []
            for item in expression.items:
                items.append((yield from self._evaluate(item, env)))
            return items
        if isinstance(expression, DictLiteral):
            result: Dict[Any, Any] = {}
            for key_expr, value_expr in expression.entries:
                key = yield from self._evaluate(key_expr, env)
                require_hashable(key, key_expr.location)
                result[key] = yield from self._evaluate(value_expr, env)
            return result
        if isinstance(expression, LambdaExpression):
            return Lambda(params=expression.params, body=expression.body, closure=env)
        if isinstance(expression, ListComprehension):
            return (yield from self._evaluate_comprehension(expression, env))
        raise LoopRuntimeError(f"Unsupported expression {expression.__class__.__name__}", location=expression.location)

    def _evaluate_slice(self, expression: SliceExpression, env: Environment) -> Runner:
        base = yield from self._evaluate(expression.base, env)
        location = expression.location
        if not isinstance(base, (list, str)):
            raise LoopRuntimeError(f"'{type_name(base)}' object is not sliceable", location=location, rule="slice")
        parts: List[Optional[int]] = []
        for part in (expression.start, expression.stop, expression.step):
            if part is None:
                parts.append(None)
                continue
            value = yield from self._evaluate(part, env)
            parts.append(None if value is None else self._as_index(value, location))
        start, stop, step = parts
        length = len(base)
        step = 1 if step is None else step
        if step <= 0:
            return base[:0]
        start = self._clamp_bound(0 if start is None else start, length)
        stop = self._clamp_bound(length if stop is None else stop, length)
        return base[start:stop:step]

    def _clamp_bound(self, bound: int, length: int) -> int:
        if bound < 0:
            bound += length
        return min(max(bound, 0), length)

    def _evaluate_comprehension(self, expression: ListComprehension, env: Environment) -> Runner:
        iterable = yield from self._evaluate(expression.iterable, env)
        result: List[Any] = []
        for item in self.iterate(iterable, expression.location):
            scope = Environment(parent=env)
            scope.define(expression.variable, item)
            if expression.condition is not None:
                keep = yield from self._evaluate(expression.condition, scope)
                if not is_truthy(keep):
                    continue
            result.append((yield from self._evaluate(expression.element, scope)))
        return result

    # ---- operators ----

    def _binary(self, operator: str, left: Any, right: Any, location: Optional[SourceLocation]) -> Any:
        if operator == "+":
            if is_number(left) and is_number(right):
                return float(left) + float(right)
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right
            raise self._operand_error(operator, left, right, location)
        if operator in ("-", "*", "/", "**"):
            if not (is_number(left) and is_number(right)):
                raise self._operand_error(operator, left, right, location)
            a, b = float(left), float(right)
            if operator == "-":
                return a - b
            if operator == "*":
                return a * b
            if operator == "/":
                if b == 0:
                    raise LoopRuntimeError("Division by zero", location=location, rule="/")
                quotient = a / b
                return float(math.trunc(quotient)) if math.isfinite(quotient) else quotient
            try:
                return math.pow(a, b)
            except OverflowError:
                raise LoopRuntimeError("Numeric overflow in '**'", location=location, rule="**") from None
            except ValueError:
                raise LoopRuntimeError(f"Invalid operands for '**': {format_number(a)}, {format_number(b)}", location=location, rule="**") from None
        if operator in ("%", "&", "|", "^", "<<", ">>"):
            if not (is_number(left) and is_number(right)):
                raise self._operand_error(operator, left, right, location)
            a = to_int(left, location, operator)
            b = to_int(right, location, operator)
            if operator == "%":
                if b == 0:
                    raise LoopRuntimeError("Modulo by zero", location=location, rule="%")
                return math.fmod(a, b)
            if operator == "&":
                return float(a & b)
            if operator == "|":
                return float(a | b)
            if operator == "^":
                return float(a ^ b)
            if b < 0:
                raise LoopRuntimeError("Negative shift count", location=location, rule=operator)
            try:
                return float(a << b if operator == "<<" else a >> b)
            except OverflowError:
                raise LoopRuntimeError(f"Numeric overflow in '{operator}'", location=location, rule=operator) from None
        if operator == "==":
            return left == right
        if operator == "!=":
            return left != right
        if operator == "<":
            return compare_values(left, right, location) < 0
        if operator == ">":
            return compare_values(left, right, location) > 0
        if operator == "<=":
            return compare_values(left, right, location) <= 0
        if operator == ">=":
            return compare_values(left, right, location) >= 0
        if operator == "in":
            return self._contains(right, left, location)
        if operator == "is":
            return values_identical(left, right)
        raise LoopRuntimeError(f"Unknown operator '{operator}'", location=location)

    def _operand_error(self, operator: str, left: Any, right: Any, location: Optional[SourceLocation]) -> LoopRuntimeError:
        return LoopRuntimeError(
            f"Unsupported operand types for {operator}: {type_name(left)} and {type_name(right)}",
            location=location,
            rule=operator,
        )

    def _unary(self, operator: str, operand: Any, location: Optional[SourceLocation]) -> Any:
        if operator == "not":
            return not is_truthy(operand)
        if not is_number(operand):
            raise LoopRuntimeError(f"Bad operand type for unary {operator}: {type_name(operand)}", location=location, rule=operator)
        if operator == "-":
            return -float(operand)
        if operator == "+":
            return float(operand)
        if operator == "~":
            return float(~to_int(operand, location, operator))
        raise LoopRuntimeError(f"Unknown operator '{operator}'", location=location)

    def _contains(self, container: Any, item: Any, location: Optional[SourceLocation]) -> bool:
        if isinstance(container, list):
            return any(element == item for element in container)
        if isinstance(container, dict):
            require_hashable(item, location)
            return item in container
        if isinstance(container, str):
            if not isinstance(item, str):
                raise LoopRuntimeError(f"'in <string>' requires string as left operand, not {type_name(item)}", location=location, rule="in")
            return item in container
        raise LoopRuntimeError(f"Argument of type '{type_name(container)}' is not iterable", location=location, rule="in")

    # ---- indexing and members ----

    def _as_index(self, value: Any, location: Optional[SourceLocation]) -> int:
        if not is_number(value):
            raise LoopRuntimeError(f"Indices must be numbers, not {type_name(value)}", location=location, rule="index")
        number = float(value)
        if not number.is_integer():
            raise LoopRuntimeError(f"Index must be a whole number, got {format_number(number)}", location=location, rule="index")
        return int(number)

    def _get_index(self, base: Any, index: Any, location: Optional[SourceLocation]) -> Any:
        if isinstance(base, (list, str)):
            position = self._as_index(index, location)
            if position < 0:
                position += len(base)
            if position < 0 or position >= len(base):
                label = "List" if isinstance(base, list) else "String"
                raise LoopRuntimeError(f"{label} index out of range", location=location, rule="index")
            return base[position]
        if isinstance(base, dict):
            require_hashable(index, location)
            if index not in base:
                raise LoopRuntimeError(f"Key not found: {to_display(index)}", location=location, rule="index")
            return base[index]
        raise LoopRuntimeError(f"'{type_name(base)}' object is not subscriptable", location=location, rule="index")

    def _set_index(self, base: Any, index: Any, value: Any, location: Optional[SourceLocation]) -> None:
        if isinstance(base, list):
            position = self._as_index(index, location)
            if position < 0:
                position += len(base)
            if position < 0 or position >= len(base):
                raise LoopRuntimeError("List assignment index out of range", location=location, rule="index")
            base[position] = value
            return
        if isinstance(base, dict):
            require_hashable(index, location)
            base[index] = value
            return
        raise LoopRuntimeError(f"'{type_name(base)}' object does not support item assignment", location=location, rule="index")

    def _get_member(self, base: Any, name: str, location: Optional[SourceLocation]) -> Any:
        if isinstance(base, dict):
            if name in base:
                return base[name]
            raise LoopRuntimeError(f"Namespace has no member '{name}'", location=location, rule="member")
        if isinstance(base, Instance):
            if name in base.fields:
                return base.fields[name]
            method = base.cls.methods.get(name)
            if method is not None:
                return BoundMethod(instance=base, function=method)
            raise LoopRuntimeError(f"'{base.cls.name}' object has no attribute '{name}'", location=location, rule="member")
        if isinstance(base, LoopClass):
            method = base.methods.get(name)
            if method is not None:
                return method
            raise LoopRuntimeError(f"Class '{base.name}' has no method '{name}'", location=location, rule="member")
        raise LoopRuntimeError(f"'{type_name(base)}' object does not support member access", location=location, rule="member")

    def iterate(self, value: Any, location: Optional[SourceLocation]) -> List[Any]:
        if isinstance(value, list):
            return list(value)
        if isinstance(value, str):
            return list(value)
        if isinstance(value, dict):
            return list(value.keys())
        raise LoopRuntimeError(f"'{type_name(value)}' object is not iterable", location=location, rule="iterate")

    # ---- calls ----

    def call(self, callee: Any, args: List[Any], kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> Runner:
        if isinstance(callee, BuiltinFunction):
            return (yield from self._call_builtin(callee, args, kwargs, location))
        if isinstance(callee, Function):
            return (yield from self._call_function(callee, args, kwargs, location))
        if isinstance(callee, BoundMethod):
            if not callee.function.params:
                raise LoopRuntimeError(
                    f"{callee.instance.cls.name}.{callee.function.name} must accept self",
                    location=location,
                    rule=callee.function.name,
                )
            return (yield from self._call_function(callee.function, [callee.instance] + args, kwargs, location, implicit=1))
        if isinstance(callee, Lambda):
            return (yield from self._call_lambda(callee, args, kwargs, location))
        if isinstance(callee, LoopClass):
            return (yield from self._construct(callee, args, kwargs, location))
        raise LoopRuntimeError(f"'{type_name(callee)}' object is not callable", location=location, rule="call")

    def _bind_arguments(
        self,
        name: str,
        params: List[str],
        args: List[Any],
        kwargs: Dict[str, Any],
        location: Optional[SourceLocation],
        implicit: int = 0,
    ) -> Dict[str, Any]:
        expected = len(params) - implicit
        supplied = len(args) - implicit
        if len(args) > len(params) or (not kwargs and len(args) != len(params)):
            raise LoopRuntimeError(
                f"{name}() expects {expected} arguments but got {supplied + len(kwargs)}",
                location=location,
                rule=name,
            )
        bound = dict(zip(params, args))
        for key, value in kwargs.items():
            if key not in params[implicit:]:
                raise LoopRuntimeError(f"{name}() got an unexpected keyword argument '{key}'", location=location, rule=name)
            if key in bound:
                raise LoopRuntimeError(f"{name}() got multiple values for argument '{key}'", location=location, rule=name)
            bound[key] = value
        missing = [param for param in params if param not in bound]
        if missing:
            raise LoopRuntimeError(f"{name}() missing argument '{missing[0]}'", location=location, rule=name)
        return bound

    def _call_builtin(self, builtin: BuiltinFunction, args: List[Any], kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> Runner:
        builtin.validate(len(args), kwargs, location)
        self._emit_event("before_call", self, builtin.name, args, location)
        try:
            result = builtin.impl(self, args, kwargs, location)
        except LoopRuntimeError as error:
            error.attach(location)
            raise
        if isinstance(result, types.GeneratorType):
            result = yield from result
        if isinstance(result, WAIT_TYPES):
            self._emit_event("on_pause", self, result)
            self.instruction_count = 0
            yield Pause(result)
            result = None
        elif isinstance(result, int) and not isinstance(result, bool):
            result = float(result)
        self._emit_event("after_call", self, builtin.name, result, location)
        return result

    def _call_function(
        self,
        function: Function,
        args: List[Any],
        kwargs: Dict[str, Any],
        location: Optional[SourceLocation],
        implicit: int = 0,
        label: Optional[str] = None,
    ) -> Runner:
        bound = self._bind_arguments(label or function.name, function.params, args, kwargs, location, implicit)
        env = Environment(parent=function.closure)
        env.values.update(bound)
        self._emit_event("before_call", self, function.name, args, location)
        self._push_frame(function.name, env, location)
        outcome = yield from self._execute_block(function.body, env)
        if outcome.flow in (Flow.BREAK, Flow.CONTINUE):
            raise self._stray_flow(outcome, self.current_location)
        self._pop_frame()
        result = outcome.value if outcome.flow is Flow.RETURN else None
        self._emit_event("after_call", self, function.name, result, location)
        return result

    def _call_lambda(self, function: Lambda, args: List[Any], kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> Runner:
        bound = self._bind_arguments("<lambda>", function.params, args, kwargs, location)
        env = Environment(parent=function.closure)
        env.values.update(bound)
        self._emit_event("before_call", self, "<lambda>", args, location)
        self._push_frame("<lambda>", env, location)
        result = yield from self._evaluate(function.body, env)
        self._pop_frame()
        self._emit_event("after_call", self, "<lambda>", result, location)
        return result

    def _construct(self, cls: LoopClass, args: List[Any], kwargs: Dict[str, Any], location: Optional[SourceLocation]) -> Runner:
        instance = Instance(cls=cls)
        init = cls.methods.get("__init__")
        if init is None:
            if args or kwargs:
                raise LoopRuntimeError(
                    f"{cls.name}() expects 0 arguments but got {len(args) + len(kwargs)}",
                    location=location,
                    rule=cls.name,
                )
            return instance
        if not init.params:
            raise LoopRuntimeError(f"{cls.name}.__init__ must accept self", location=location, rule=cls.name)
        yield from self._call_function(init, [instance] + args, kwargs, location, implicit=1, label=cls.name)
        return instance

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _push_frame(self, name: str, env: Environment, location: Optional[SourceLocation]) -> None:
        if len(self.call_stack) > MAX_CALL_DEPTH:
            raise LoopRuntimeError("Maximum recursion depth exceeded", location=location, rule="call")
        self.call_stack.append(self._new_frame(name, env, location))

    def _pop_frame(self) -> None:
        frame = self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)

    # ---- hooks and logging ----

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        if not self.hook_registry.has_handlers(event):
            return
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except LoopRuntimeError:
            raise
        except Exception as exc:
            raise LoopRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=self.current_location,
                rule="ext",
            ) from exc

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = frame.env.snapshot() if (self.verbose and frame) else None
        entry = self.logger.record(frame=frame, location=location, rule=rule, env_snapshot=env_snapshot)

        if not self.hook_registry.has_step_rules:
            return
        # Run extension step rules (every N steps) after recording.
        try:
            self.hook_registry.after_step(self, StepContext(step_index=entry.step_index, rule=rule, location=location))
        except LoopRuntimeError:
            raise
        except Exception as exc:
            raise LoopRuntimeError(
                f"Extension step rule failed: {exc}",
                location=location,
                rule="ext",
            ) from exc


# ---- execution handle ----


class ExecutionState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)


@dataclass(frozen=True)
class Status:
    state: ExecutionState
    wait: Optional[Any] = None
    error: Optional[LoopError] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@contextmanager
def _call_headroom():
    """Let Python hold ``MAX_CALL_DEPTH`` nested LOOP calls while user code runs."""
    limit = sys.getrecursionlimit()
    sys.setrecursionlimit(max(limit, limit + MAX_CALL_DEPTH * _FRAMES_PER_CALL))
    try:
        yield
    finally:
        sys.setrecursionlimit(limit)


class Execution:
    """A resumable run of one program.

    Each ``resume()`` runs user code until the next pause point and reports
    where it stopped. ``RUNNING`` means the instruction budget ran out,
    ``PAUSED`` carries the wait descriptor a builtin asked for. Once a
    terminal status has been returned it is returned again on every call.
    """

    def __init__(self, interpreter: Interpreter, program: Program) -> None:
        self.interpreter = interpreter
        self.program = program
        self._runner: Optional[Runner] = interpreter.run_program(program)
        self._final: Optional[Status] = None

    @property
    def status(self) -> Optional[Status]:
        return self._final

    @property
    def done(self) -> bool:
        return self._final is not None

    def resume(self) -> Status:
        if self._final is not None:
            return self._final
        assert self._runner is not None
        try:
            with _call_headroom():
                pause = next(self._runner)
        except StopIteration:
            return self._finish(Status(ExecutionState.COMPLETED))
        except LoopRuntimeError as error:
            return self._finish(Status(ExecutionState.FAILED, error=error))
        if pause.wait is None:
            return Status(ExecutionState.RUNNING)
        return Status(ExecutionState.PAUSED, wait=pause.wait)

    def cancel(self) -> Status:
        if self._final is None:
            assert self._runner is not None
            with _call_headroom():
                self._runner.close()
            self._finish(Status(ExecutionState.CANCELLED))
        assert self._final is not None
        return self._final

    def _finish(self, status: Status) -> Status:
        self._final = status
        self._runner = None
        return status


def start(
    program: Program,
    services: Optional[RuntimeServices] = None,
    *,
    output_sink: Optional[Callable[[str], None]] = None,
    budget: int = DEFAULT_BUDGET,
    verbose: bool = False,
) -> Execution:
    interpreter = Interpreter(services=services, output_sink=output_sink, budget=budget, verbose=verbose)
    return Execution(interpreter, program)


# ---- tracebacks ----


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    state_entry: Optional[StateEntry]

    def text_lines(self, verbose: bool) -> List[str]:
        entry = self.state_entry
        if self.location is None:
            lines = [f"  <unknown location> in {self.name}"]
        else:
            lines = [f"  File \"{self.location.file}\", line {self.location.line}, in {self.name}"]
            if entry is not None and entry.statement:
                lines.append(f"    {entry.statement}")
        if verbose and entry is not None:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if entry.env_snapshot is not None:
                lines.append("    Env snapshot: " + ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items()))
        return lines

    def to_dict(self, index: int) -> Dict[str, Any]:
        data: Dict[str, Any] = {"frame_index": index, "name": self.name}
        if self.location is not None:
            data["source_location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "statement": self.location.statement,
            }
        entry = self.state_entry
        if entry is not None:
            data.update(state_id=entry.state_id, step_index=entry.step_index, rule=entry.rule)
            if entry.env_snapshot is not None:
                data["env_snapshot"] = entry.env_snapshot
        return data


class TracebackFormatter:
    """Render the call stack left behind by a failed run, oldest frame first.

    Each frame points at the last statement it executed, taken from the
    state log. Frames that never logged a statement fall back to the call site.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        logger = self.interpreter.logger
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            frames.append(TracebackFrame(name=frame.name, location=location, state_entry=entry))
        return frames

    def format_text(self, error: LoopRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            lines.extend(frame.text_lines(verbose))
        lines.append(str(error))
        return "\n".join(lines)

    def to_json(self, error: LoopRuntimeError) -> str:
        frames = [frame.to_dict(index) for index, frame in enumerate(self.build_frames())]
        return json.dumps({"error": error.to_dict(), "traceback": frames}, indent=2)
