import ast
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .errors import ParseFailure
from .model import CallShape, CallSite, ParseResult, Symbol, SymbolId


SELF_NAMES = {"self", "cls"}
STATIC_DECORATORS = {"staticmethod", "classmethod"}
MAX_RECEIVER_TEXT = 80


class LineOffsets:
    """Translate ``ast`` (lineno, col_offset) positions into byte offsets.

    ``ast`` reports columns as UTF-8 byte offsets, so only the line starts
    need to be computed on the encoded source.
    """

    def __init__(self, source: str):
        data = source.encode("utf-8")
        self.size = len(data)
        self.starts = [0]
        pos = data.find(b"\n")
        while pos != -1:
            self.starts.append(pos + 1)
            pos = data.find(b"\n", pos + 1)

    def offset(self, lineno: int, col: int) -> int:
        if lineno - 1 >= len(self.starts):
            return self.size
        return min(self.starts[lineno - 1] + col, self.size)


class _Frame:
    __slots__ = ("owner", "locals", "constructed")

    def __init__(self, owner: Optional[Symbol]):
        self.owner = owner
        self.locals: Set[str] = set()
        # local name -> callee that produced it (``x = Foo()``)
        self.constructed: Dict[str, str] = {}


def _callee_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        # string annotations: "Calculator"
        return node.value.rsplit(".", 1)[-1] or None
    return None


def _safe_unparse(node: ast.AST) -> str:
    try:
        text = ast.unparse(node)
    except (AttributeError, ValueError, TypeError):
        return type(node).__name__
    return text if len(text) <= MAX_RECEIVER_TEXT else text[: MAX_RECEIVER_TEXT - 3] + "..."


def _start_line(node: ast.AST) -> int:
    decorators = getattr(node, "decorator_list", None) or []
    return min([node.lineno] + [d.lineno for d in decorators])


class SymbolVisitor(ast.NodeVisitor):
    def __init__(self, path: str, offsets: LineOffsets):
        self.path = path
        self.offsets = offsets
        self.symbols: List[Symbol] = []
        self.calls: List[CallSite] = []
        self.imports: List[str] = []
        self.scope: List[Symbol] = []
        self.frames: List[_Frame] = [_Frame(None)]
        self.depth = 0
        self._seen: Dict[str, int] = {}

    # symbols

    def _qualname(self, name: str) -> str:
        qn = f"{self.scope[-1].qualname}.{name}" if self.scope else name
        count = self._seen.get(qn, 0) + 1
        self._seen[qn] = count
        # redefinitions stay distinct symbols: f, f#2, f#3 ...
        return qn if count == 1 else f"{qn}#{count}"

    def _stmt_start(self, stmt: ast.stmt) -> int:
        # split points sit at line starts so indentation stays with its statement
        return self.offsets.offset(_start_line(stmt), 0)

    def _register(
        self,
        node: ast.AST,
        name: str,
        kind: str,
        *,
        bases: Sequence[str] = (),
        body: Sequence[ast.stmt] = (),
    ) -> Symbol:
        start_line = _start_line(node)
        end_line = node.end_lineno or start_line
        sym = Symbol(
            id=SymbolId(self.path, self._qualname(name), kind),
            name=name,
            start_byte=self.offsets.offset(start_line, node.col_offset),
            end_byte=self.offsets.offset(end_line, node.end_col_offset or 0),
            start_line=start_line,
            end_line=end_line,
            scope=tuple(s.id for s in self.scope),
            bases=tuple(bases),
            statements=tuple(self._stmt_start(stmt) for stmt in body),
        )
        self.symbols.append(sym)
        return sym

    def _member_kind(self, decorators: Iterable[ast.expr]) -> str:
        parent = self.scope[-1] if self.scope else None
        if parent is None or parent.kind != "class":
            return "function"
        names = {_callee_name(d.func if isinstance(d, ast.Call) else d) for d in decorators}
        return "static-method" if names & STATIC_DECORATORS else "method"

    def _enter(self, sym: Symbol, body: Sequence[ast.AST], args: Optional[ast.arguments] = None):
        frame = _Frame(sym)
        if args is not None:
            for arg in args.posonlyargs + args.args + args.kwonlyargs:
                frame.locals.add(arg.arg)
                annotated = _callee_name(arg.annotation) if arg.annotation is not None else None
                if annotated:
                    frame.constructed[arg.arg] = annotated
            for arg in (args.vararg, args.kwarg):
                if arg is not None:
                    frame.locals.add(arg.arg)
        self.scope.append(sym)
        self.frames.append(frame)
        try:
            for child in body:
                self.visit(child)
        finally:
            self.frames.pop()
            self.scope.pop()

    # bindings

    def _bind(self, name: str, value: Optional[ast.AST]):
        frame = self.frames[-1]
        frame.locals.add(name)
        producer = _callee_name(value.func) if isinstance(value, ast.Call) else None
        if producer:
            frame.constructed[name] = producer
        else:
            frame.constructed.pop(name, None)

    def _bind_target(self, target: ast.AST, value: Optional[ast.AST]):
        if isinstance(target, ast.Name):
            self._bind(target.id, value)
        elif isinstance(target, (ast.Tuple, ast.List)):
            for elt in target.elts:
                self._bind_target(elt, None)
        elif isinstance(target, ast.Starred):
            self._bind_target(target.value, None)
        else:
            # attribute/subscript targets may contain calls of their own
            self.visit(target)

    def _is_local(self, name: str) -> bool:
        return any(name in frame.locals for frame in self.frames)

    # visitors

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self.imports.append(alias.name)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        mod = "." * (node.level or 0) + (node.module or "")
        for alias in node.names:
            if node.module:
                self.imports.append(f"{mod}.{alias.name}")
            else:
                self.imports.append(f"{mod}{alias.name}")

    def visit_ClassDef(self, node: ast.ClassDef):
        for child in node.decorator_list + node.bases:
            self.visit(child)
        for kw in node.keywords:
            self.visit(kw.value)
        bases = [b for b in (_callee_name(base) for base in node.bases) if b]
        sym = self._register(node, node.name, "class", bases=bases, body=node.body)
        self._enter(sym, node.body)

    def visit_FunctionDef(self, node: ast.FunctionDef):
        self._handle_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef):
        self._handle_function(node)

    def _handle_function(self, node):
        for child in node.decorator_list:
            self.visit(child)
        for default in node.args.defaults + [d for d in node.args.kw_defaults if d is not None]:
            self.visit(default)
        kind = self._member_kind(node.decorator_list)
        sym = self._register(node, node.name, kind, body=node.body)
        self._enter(sym, node.body, node.args)

    def visit_Assign(self, node: ast.Assign):
        if (
            len(node.targets) == 1
            and isinstance(node.targets[0], ast.Name)
            and isinstance(node.value, ast.Lambda)
        ):
            self._register_lambda(node, node.targets[0].id, node.value)
            return
        self.visit(node.value)
        for target in node.targets:
            self._bind_target(target, node.value)

    def visit_AnnAssign(self, node: ast.AnnAssign):
        if isinstance(node.target, ast.Name) and isinstance(node.value, ast.Lambda):
            self._register_lambda(node, node.target.id, node.value)
            return
        if node.value is not None:
            self.visit(node.value)
        if isinstance(node.target, ast.Name):
            declared = _callee_name(node.annotation)
            self._bind(node.target.id, node.value)
            if declared and not isinstance(node.value, ast.Call):
                self.frames[-1].constructed[node.target.id] = declared
        else:
            self.visit(node.target)

    def visit_NamedExpr(self, node: ast.NamedExpr):
        self.visit(node.value)
        self._bind(node.target.id, node.value)

    def visit_For(self, node: ast.For):
        self.visit(node.iter)
        self._bind_target(node.target, None)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def visit_withitem(self, node: ast.withitem):
        self.visit(node.context_expr)
        if node.optional_vars is not None:
            self._bind_target(node.optional_vars, node.context_expr)

    def _register_lambda(self, node: ast.stmt, name: str, value: ast.Lambda):
        self.frames[-1].locals.add(name)
        self.frames[-1].constructed.pop(name, None)
        for default in value.args.defaults:
            self.visit(default)
        kind = self._member_kind(())
        sym = self._register(node, name, kind)
        self._enter(sym, [value.body], value.args)

    def visit_Call(self, node: ast.Call):
        site = self._call_site(node)
        if site is not None:
            self.calls.append(site)
        self.visit(node.func)
        self.depth += 1
        try:
            for arg in node.args:
                self.visit(arg)
            for kw in node.keywords:
                self.visit(kw.value)
        finally:
            self.depth -= 1

    def _call_site(self, node: ast.Call) -> Optional[CallSite]:
        func = node.func
        receiver = None
        receiver_class = None
        if isinstance(func, ast.Name):
            shape = CallShape.PLAIN
            name = func.id
        elif isinstance(func, ast.Attribute):
            name = func.attr
            value = func.value
            if isinstance(value, ast.Name) and value.id in SELF_NAMES:
                shape, receiver = CallShape.SELF, value.id
            elif (
                isinstance(value, ast.Call)
                and isinstance(value.func, ast.Name)
                and value.func.id == "super"
            ):
                shape, receiver = CallShape.SELF, "super"
            elif isinstance(value, ast.Name) and self._is_local(value.id):
                shape, receiver = CallShape.RECEIVER, value.id
                receiver_class = self.frames[-1].constructed.get(value.id)
            elif isinstance(value, ast.Name):
                shape, receiver = CallShape.STATIC, value.id
            else:
                shape, receiver = CallShape.RECEIVER, _safe_unparse(value)
        else:
            return None

        return CallSite(
            path=self.path,
            start_byte=self.offsets.offset(node.lineno, node.col_offset),
            end_byte=self.offsets.offset(node.end_lineno or node.lineno, node.end_col_offset or 0),
            line=node.lineno,
            shape=shape,
            name=name,
            receiver=receiver,
            receiver_class=receiver_class,
            enclosing=self.scope[-1].id if self.scope else None,
            depth=self.depth,
        )


def parse_python_file(path: str, source: str) -> ParseResult:
    """
    Extract symbols and call sites from one Python file.
    Raises ParseFailure when the file does not parse.
    """
    try:
        tree = ast.parse(source, filename=path)
        visitor = SymbolVisitor(path, LineOffsets(source))
        visitor.visit(tree)
    except (SyntaxError, ValueError, RecursionError) as exc:
        raise ParseFailure(path, f"{type(exc).__name__}: {exc}") from exc

    return ParseResult(
        path=path,
        symbols=visitor.symbols,
        calls=visitor.calls,
        imports=list(dict.fromkeys(visitor.imports)),
    )
