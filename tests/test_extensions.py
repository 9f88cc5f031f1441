import textwrap

import pytest

from extensions import (
    BuiltinRegistry,
    BuiltinSpec,
    ExtensionAPI,
    LoopExtensionError,
    gather_extension_paths,
    load_runtime_services,
    read_loopx,
    register_extension,
)
from interpreter import ExecutionState, Interpreter, LoopRuntimeError, WaitSeconds

from conftest import run_source


class TestBuiltinRegistration:
    def test_registered_builtin_is_callable(self, services, ext):
        ext.register_builtin("double", 1, 1, lambda interp, args, kwargs, location: args[0] * 2)
        result = run_source("r = double(21)", services)
        assert result.globals["r"] == 42

    def test_decorator_uses_docstring(self, services, ext):
        @ext.builtin("greet", 1, 1)
        def greet(interp, args, kwargs, location):
            """greet(name): say hello"""
            return "hello " + args[0]

        assert services.builtins.get("greet").doc == "greet(name): say hello"
        assert run_source('r = greet("farm")', services).globals["r"] == "hello farm"

    def test_integer_results_become_numbers(self, services, ext):
        ext.register_builtin("answer", 0, 0, lambda interp, args, kwargs, location: 42)
        value = run_source("r = answer()", services).globals["r"]
        assert value == 42 and isinstance(value, float)

    def test_keywords(self, services, ext):
        @ext.builtin("scale", 1, 1, keywords=("by",))
        def scale(interp, args, kwargs, location):
            return args[0] * kwargs.get("by", 1)

        assert run_source("r = [scale(2), scale(2, by=3)]", services).globals["r"] == [2, 6]
        result = run_source("r = scale(2, times=3)", services)
        assert result.error.message == "scale() got an unexpected keyword argument 'times'"

    def test_suspending_builtin(self, services, ext):
        ext.register_builtin("wait_a_bit", 0, 0, lambda *_: WaitSeconds(0.25), suspends=True)
        result = run_source('wait_a_bit()\nprint("resumed")', services)
        assert result.waits == [WaitSeconds(0.25)]
        assert result.output == ["resumed"]

    def test_generator_builtin_calls_back_into_user_code(self, services, ext):
        @ext.builtin("apply", 2, 2)
        def apply(interp, args, kwargs, location):
            value = yield from interp.call(args[0], [args[1]], {}, location)
            return value

        source = "def slow_double(v):\n    sleep(0.5)\n    return v * 2\nr = apply(slow_double, 4)\ns = apply(lambda v: v + 1, 1)"
        result = run_source(source, services)
        assert result.globals["r"] == 8
        assert result.globals["s"] == 2
        assert result.waits == [WaitSeconds(0.5)]

    def test_builtin_errors_get_call_location(self, services, ext):
        def explode(interp, args, kwargs, location):
            raise LoopRuntimeError("boom")

        ext.register_builtin("explode", 0, 0, explode)
        result = run_source("x = 1\nexplode()", services)
        assert result.state is ExecutionState.FAILED
        assert str(result.error) == "RuntimeError (Line 2): boom"

    def test_python_errors_become_internal_errors(self, services, ext):
        ext.register_builtin("broken", 0, 0, lambda *_: {}["missing"])
        result = run_source("broken()", services)
        assert result.state is ExecutionState.FAILED
        assert result.error.message.startswith("Internal interpreter error:")
        assert result.error.line == 1

    def test_duplicate_name_rejected(self, ext):
        ext.register_builtin("once", 0, 0, lambda *_: None)
        with pytest.raises(LoopExtensionError):
            ext.register_builtin("once", 0, 0, lambda *_: None)

    def test_invalid_name_rejected(self, ext):
        with pytest.raises(LoopExtensionError):
            ext.register_builtin("not valid", 0, 0, lambda *_: None)

    def test_core_builtin_cannot_be_overridden(self, services, ext):
        ext.register_builtin("print", 0, None, lambda *_: None)
        with pytest.raises(LoopExtensionError):
            Interpreter(services=services)

    def test_registry_rejects_bad_arity(self):
        registry = BuiltinRegistry()
        with pytest.raises(LoopExtensionError):
            registry.register(BuiltinSpec(name="f", min_args=2, max_args=1, impl=lambda *_: None))

    def test_registry_listing(self):
        registry = BuiltinRegistry()
        for name in ("b", "a"):
            registry.register(BuiltinSpec(name=name, min_args=0, max_args=0, impl=lambda *_: None))
        assert registry.names() == ["a", "b"]
        assert "a" in registry and len(registry) == 2


class TestEnumsAndConstants:
    def test_enum_member_access(self, services, ext):
        ext.register_enum("Colors", {"Red": "red", "Blue": "blue"})
        ext.register_constant("Answer", 42.0)
        result = run_source("import Colors.Red\nr = [Colors.Red, Colors.Blue, Answer]", services)
        assert result.globals["r"] == ["red", "blue", 42]

    def test_missing_member(self, services, ext):
        ext.register_enum("Colors", {"Red": "red"})
        result = run_source("import Colors.Purple", services)
        assert result.error.message == "Namespace has no member 'Purple'"

    def test_enums_are_copied_per_execution(self, services, ext):
        ext.register_enum("Colors", {"Red": "red"})
        run_source('Colors["Red"] = "changed"', services)
        assert run_source("r = Colors.Red", services).globals["r"] == "red"

    def test_names_must_be_unique(self, ext):
        ext.register_enum("Colors", {"Red": "red"})
        with pytest.raises(LoopExtensionError):
            ext.register_constant("Colors", 1)

    def test_enum_members_must_be_identifiers(self, ext):
        with pytest.raises(LoopExtensionError):
            ext.register_enum("Bad", {"two words": 1})


class TestHooks:
    def test_call_hooks(self, services, ext):
        calls = []
        ext.on_event("before_call", lambda interp, name, args, location: calls.append(("before", name)))
        ext.on_event("after_call", lambda interp, name, result, location: calls.append(("after", name, result)))
        run_source("def f(x):\n    return x + 1\nlen([f(1)])", services)
        assert calls == [("before", "f"), ("after", "f", 2), ("before", "len"), ("after", "len", 1)]

    def test_lambda_calls_are_reported(self, services, ext):
        calls = []
        ext.on_event("before_call", lambda interp, name, args, location: calls.append(("before", name, list(args))))
        ext.on_event("after_call", lambda interp, name, result, location: calls.append(("after", name, result)))
        run_source("inc = lambda v: v + 1\nr = inc(4)", services)
        assert calls == [("before", "<lambda>", [4]), ("after", "<lambda>", 5)]

    def test_lifecycle_hooks(self, services, ext):
        events = []

        @ext.on_event("program_start")
        def started(interp, program, env):
            events.append("start")

        @ext.on_event("on_pause")
        def paused(interp, wait):
            events.append(wait)

        @ext.on_event("program_end")
        def ended(interp):
            events.append("end")

        run_source("sleep(2)", services)
        assert events == ["start", WaitSeconds(2.0), "end"]

    def test_on_error(self, services, ext):
        errors = []
        ext.on_event("on_error", lambda interp, error: errors.append(error.message))
        run_source("x = nope", services)
        assert errors == ["Undefined variable 'nope'"]

    def test_priority_orders_handlers(self, services, ext):
        order = []
        ext.on_event("program_start", lambda *_: order.append("low"), priority=0)
        ext.on_event("program_start", lambda *_: order.append("high"), priority=10)
        run_source("pass", services)
        assert order == ["high", "low"]

    def test_unknown_event(self, ext):
        with pytest.raises(LoopExtensionError):
            ext.on_event("before_everything", lambda *_: None)

    def test_failing_hook_fails_the_run(self, services, ext):
        def boom(interp, statement, env):
            raise KeyError("boom")

        ext.on_event("before_statement", boom)
        result = run_source("x = 1", services)
        assert result.state is ExecutionState.FAILED
        assert result.error.message.startswith("Extension hook 'before_statement' failed")

    def test_every_n_steps(self, services, ext):
        seen = []

        @ext.every_n_steps(2)
        def every_other(interp, ctx):
            seen.append(ctx.step_index)

        run_source("a = 1\nb = 2\nc = 3\nd = 4\ne = 5", services)
        assert seen == [0, 2, 4]

    def test_every_n_steps_must_be_positive(self, ext):
        with pytest.raises(LoopExtensionError):
            ext.every_n_steps(0, lambda *_: None)


class TestExtensionLoading:
    def write_extension(self, directory, name, body):
        path = directory / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    def test_load_python_extension(self, tmp_path):
        path = self.write_extension(
            tmp_path,
            "triple.py",
            """
            LOOP_EXTENSION_NAME = "tripler"

            def loop_register(ext):
                ext.metadata(name=ext.name, version="1.2.0")
                ext.register_builtin("triple", 1, 1, lambda interp, args, kwargs, location: args[0] * 3)
            """,
        )
        services = load_runtime_services([str(path)])
        assert [meta.name for meta in services.metadata] == ["tripler"]
        assert services.metadata[0].version == "1.2.0"
        assert run_source("r = triple(3)", services).globals["r"] == 9

    def test_loopx_pointer_file(self, tmp_path):
        self.write_extension(tmp_path, "one.py", "def loop_register(ext):\n    ext.register_constant('One', 1.0)\n")
        (tmp_path / "sub").mkdir()
        self.write_extension(tmp_path / "sub", "two.py", "def loop_register(ext):\n    ext.register_constant('Two', 2.0)\n")
        pointer = tmp_path / "bundle.loopx"
        pointer.write_text("# extensions\none.py\nsub/two.py  # relative to this file\n\n", encoding="utf-8")

        assert read_loopx(str(pointer)) == [str(tmp_path / "one.py"), str(tmp_path / "sub" / "two.py")]
        assert len(gather_extension_paths([str(pointer)])) == 2
        services = load_runtime_services([str(pointer)])
        assert services.constants == {"One": 1.0, "Two": 2.0}

    def test_missing_extension(self, tmp_path):
        with pytest.raises(LoopExtensionError):
            load_runtime_services([str(tmp_path / "absent.py")])

    def test_missing_pointer_file(self, tmp_path):
        with pytest.raises(LoopExtensionError):
            read_loopx(str(tmp_path / "absent.loopx"))

    def test_module_without_register(self, tmp_path):
        path = self.write_extension(tmp_path, "empty.py", "VALUE = 1\n")
        with pytest.raises(LoopExtensionError):
            load_runtime_services([str(path)])

    def test_api_version_mismatch(self, services):
        class Module:
            LOOP_EXTENSION_API_VERSION = 99

            @staticmethod
            def loop_register(ext):
                raise AssertionError("should not be called")

        with pytest.raises(LoopExtensionError):
            register_extension(services, Module, default_name="future")

    def test_register_extension_returns_api(self, services):
        class Module:
            @staticmethod
            def loop_register(ext):
                ext.register_constant("Ready", True)

        api = register_extension(services, Module, default_name="module")
        assert isinstance(api, ExtensionAPI)
        assert api.name == "module"
        assert services.global_names() == ["Ready"]
