"""
rulemock Script Sandbox

Runs user-authored response scripts. A script is Python source that defines
``main(req, faker)``, plain or ``async``:

    def main(req, faker):
        return {'id': req.params['id'], 'name': faker.name()}

Every run compiles the source into a fresh namespace. The namespace only
sees ``req``, ``faker`` and ``console``, a whitelisted set of builtins and a
handful of importable pure modules. Imported modules are read-only views
without private names or submodules.

Before the code runs, names and attributes starting with ``_`` and frame or
code introspection attributes are rejected, and every attribute write goes
through a guard that only lets a script modify objects it created itself.
"""

import ast
import builtins
import copy
import inspect
import logging
import types
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Callable, Set

from .errors import ScriptError
from .template import DataTemplate


ALLOWED_MODULES = frozenset({
    'asyncio', 'base64', 'collections', 'datetime', 'decimal', 'hashlib',
    'itertools', 'json', 'math', 'random', 're', 'string', 'time', 'uuid',
})

# Modules whose views expose only these names
MODULE_EXPORTS = {
    'asyncio': frozenset({'sleep', 'TimeoutError'}),
    'decimal': frozenset({
        'Decimal', 'InvalidOperation', 'DivisionByZero', 'ROUND_CEILING', 'ROUND_DOWN',
        'ROUND_FLOOR', 'ROUND_HALF_DOWN', 'ROUND_HALF_EVEN', 'ROUND_HALF_UP', 'ROUND_UP',
    }),
}

# Names left out of module views: process-wide state or lookups by string
MODULE_HIDDEN = {
    'random': frozenset({'seed', 'setstate'}),
    'string': frozenset({'Formatter'}),
}

# Faker members that reseed, reconfigure or remember across calls
FAKER_HIDDEN = frozenset({
    'seed', 'seed_instance', 'seed_locale', 'random', 'unique', 'add_provider',
    'set_arguments', 'del_arguments', 'set_formatter', 'factories', 'providers',
    'get_providers', 'provider',
})

# Attributes that lead from a value to frames, code or globals
INSPECT_ATTRIBUTES = frozenset({
    'gi_frame', 'gi_code', 'gi_yieldfrom', 'cr_await', 'cr_frame', 'cr_code',
    'ag_await', 'ag_frame', 'ag_code', 'tb_frame', 'tb_next', 'f_back',
    'f_builtins', 'f_code', 'f_globals', 'f_locals', 'f_trace', 'co_code', 'mro',
})

# Global holding the attribute write guard; unreachable from source
WRITE_GUARD = '_write_guard_'

SAFE_BUILTINS = (
    'abs', 'all', 'any', 'ascii', 'bin', 'bool', 'bytearray', 'bytes', 'callable',
    'chr', 'classmethod', 'complex', 'dict', 'divmod', 'enumerate', 'filter', 'float',
    'format', 'frozenset', 'hasattr', 'hash', 'hex', 'int', 'isinstance', 'issubclass',
    'iter', 'len', 'list', 'map', 'max', 'min', 'next', 'object', 'oct', 'ord', 'pow',
    'property', 'range', 'repr', 'reversed', 'round', 'set', 'slice', 'sorted',
    'staticmethod', 'str', 'sum', 'super', 'tuple', 'type', 'zip',
    'ArithmeticError', 'AssertionError', 'AttributeError', 'Exception', 'IndexError',
    'KeyError', 'LookupError', 'NotImplementedError', 'RuntimeError', 'StopIteration',
    'TypeError', 'ValueError', 'ZeroDivisionError',
)

logger = logging.getLogger("rulemock.sandbox")


@dataclass(frozen=True)
class ScriptRequest:
    """Read-only view of the HTTP request handed to scripts as ``req``."""

    method: str
    path: str
    query: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    params: Dict[str, str] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.to_dict().get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.to_dict()[name]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'method': self.method,
            'path': self.path,
            'query': self.query,
            'headers': self.headers,
            'body': self.body,
            'params': self.params,
        }


class ScriptConsole:
    """``console`` object for scripts; writes to the sandbox logger."""

    def __init__(self, label: str = 'script'):
        self.label = label

    def _emit(self, level: int, args) -> None:
        logger.log(level, f"[{self.label}] " + ' '.join(str(a) for a in args))

    def log(self, *args):
        self._emit(logging.INFO, args)

    def info(self, *args):
        self._emit(logging.INFO, args)

    def debug(self, *args):
        self._emit(logging.DEBUG, args)

    def warn(self, *args):
        self._emit(logging.WARNING, args)

    def error(self, *args):
        self._emit(logging.ERROR, args)


class FakerHelper:
    """
    ``faker`` object for scripts.

    Proxies Faker providers (``faker.name()``, ``faker.email()``) and adds
    ``faker.mock(template)`` to expand a data template.
    """

    def __init__(self, template: DataTemplate):
        self._template = template

    def mock(self, template: Any) -> Any:
        if isinstance(template, str):
            return self._template.expand_text(template)
        return self._template.expand(template)

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name in FAKER_HIDDEN:
            raise AttributeError(name)
        value = getattr(self._template.faker, name)
        if isinstance(value, types.ModuleType):
            raise AttributeError(name)
        return value


class ModuleView:
    """Read-only view of an importable module."""

    __slots__ = ('_module', '_exports', '_hidden')

    def __init__(self, module: types.ModuleType):
        object.__setattr__(self, '_module', module)
        object.__setattr__(self, '_exports', MODULE_EXPORTS.get(module.__name__))
        object.__setattr__(self, '_hidden', MODULE_HIDDEN.get(module.__name__, frozenset()))

    def __getattr__(self, name: str) -> Any:
        exports = self._exports
        if name.startswith('_') or name in self._hidden or (exports is not None and name not in exports):
            raise AttributeError(f"module '{self._module.__name__}' has no attribute '{name}'")
        value = getattr(self._module, name)
        if isinstance(value, types.ModuleType):
            raise AttributeError(f"module '{self._module.__name__}' has no attribute '{name}'")
        if isinstance(value, (dict, list, set, bytearray)):
            return copy.copy(value)
        return value

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only in mock scripts")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only in mock scripts")

    def __repr__(self) -> str:
        return f"<module '{self._module.__name__}'>"


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed in mock scripts")
    return ModuleView(builtins.__import__(name))


class ScriptScope:
    """Objects created by one script run, the only ones it may modify."""

    def __init__(self):
        self.namespace: Dict[str, Any] = {}
        self.classes: Set[type] = set()

    def build_class(self, func, name, *bases, **kwargs):
        cls = builtins.__build_class__(func, name, *bases, **kwargs)
        self.classes.add(cls)
        return cls

    def owns(self, obj: Any) -> bool:
        if isinstance(obj, type):
            return obj in self.classes
        if isinstance(obj, types.FunctionType):
            return obj.__globals__ is self.namespace
        return type(obj) in self.classes

    def guard_write(self, obj: Any) -> Any:
        if self.owns(obj):
            return obj
        raise AttributeError(f"'{type(obj).__name__}' object is read-only in mock scripts")


def _is_private(name: str) -> bool:
    return name.startswith('_') and name != '_'


def check_source(tree: ast.AST) -> None:
    """
    Reject private names and attributes, and introspection attributes.

    A lone ``_`` stays usable as a throwaway variable.

    Raises:
        ScriptError: On the first offending node
    """
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith('_') or node.attr in INSPECT_ATTRIBUTES:
                raise ScriptError(f"Access to '{node.attr}' is not allowed (line {node.lineno})")
        elif isinstance(node, ast.Name) and _is_private(node.id):
            raise ScriptError(f"Use of '{node.id}' is not allowed (line {node.lineno})")
        elif isinstance(node, ast.alias):
            for name in (node.name, node.asname or ''):
                if _is_private(name) or any(part.startswith('_') for part in name.split('.')[1:]):
                    raise ScriptError(f"Import of '{name}' is not allowed in mock scripts")


class GuardAttributeWrites(ast.NodeTransformer):
    """Rewrite ``obj.attr = value`` and ``del obj.attr`` to check ``obj`` first."""

    def visit_Attribute(self, node: ast.Attribute) -> ast.Attribute:
        self.generic_visit(node)
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            node.value = ast.Call(
                func=ast.Name(id=WRITE_GUARD, ctx=ast.Load()),
                args=[node.value],
                keywords=[],
            )
        return node


class ScriptSandbox:
    """
    Compiles and runs response scripts in an isolated namespace.

    Example:
        sandbox = ScriptSandbox(DataTemplate())
        value = await sandbox.run(rule['responseAdvanced'], request_view)
    """

    def __init__(self, template: Optional[DataTemplate] = None, entry: str = 'main'):
        """
        Initialize sandbox.

        Args:
            template: Data template expander behind ``faker.mock``
            entry: Name of the function scripts must define
        """
        self.template = template or DataTemplate()
        self.entry = entry

    def _build_namespace(self, console: ScriptConsole, scope: ScriptScope) -> Dict[str, Any]:
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
        safe['__import__'] = _restricted_import
        safe['__build_class__'] = scope.build_class
        safe['print'] = console.log
        scope.namespace.update({
            '__builtins__': safe,
            '__name__': '__mock_script__',
            WRITE_GUARD: scope.guard_write,
            'console': console,
            'faker': FakerHelper(self.template),
        })
        return scope.namespace

    def load(self, source: str, label: str = 'script') -> Callable[..., Any]:
        """
        Compile the script and return its entry function.

        Raises:
            ScriptError: On syntax errors, rejected names, top-level failures
                or a missing entry
        """
        try:
            tree = ast.parse(source or '', filename='<mock-script>', mode='exec')
        except SyntaxError as e:
            raise ScriptError(f"Script syntax error: {e.msg} (line {e.lineno})")

        check_source(tree)
        tree = ast.fix_missing_locations(GuardAttributeWrites().visit(tree))
        code = compile(tree, '<mock-script>', 'exec')
        namespace = self._build_namespace(ScriptConsole(label), ScriptScope())

        try:
            exec(code, namespace)
        except Exception as e:
            raise ScriptError(f"Script error: {type(e).__name__}: {e}")

        entry = namespace.get(self.entry)
        if not callable(entry):
            raise ScriptError(
                f"{self.entry} is not defined: the script must define a function "
                f"{self.entry}(req, faker)"
            )
        return entry

    async def run(self, source: str, request: Any, label: str = 'script') -> Any:
        """
        Run a script against a request view.

        Args:
            source: Script source
            request: Object passed as ``req``
            label: Name used in console log lines

        Returns:
            The entry function's return value (awaited when it is awaitable)

        Raises:
            ScriptError: On any failure while loading or running the script
        """
        entry = self.load(source, label)
        helper = FakerHelper(self.template)
        try:
            result = entry(request, helper)
            if inspect.isawaitable(result):
                result = await result
        except ScriptError:
            raise
        except Exception as e:
            logger.debug(f"[{label}] script raised", exc_info=True)
            raise ScriptError(f"Script error: {type(e).__name__}: {e}")
        return result
