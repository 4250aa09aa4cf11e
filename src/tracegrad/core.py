import os
from typing import (
    Callable,
    NamedTuple,
    Dict,
    List,
    Any,
    Sequence,
    Tuple,
    Optional,
    Union,
    Set,
    Final,
)
import types
from collections import deque
from contextlib import ContextDecorator
import numpy as np
import inspect
from functools import partial
import importlib
import time

# =================================
#   Utils
# =================================


class Timing(ContextDecorator):
    def __init__(self, prefix="", on_exit=None, enabled=True):
        self.prefix, self.on_exit, self.enabled = prefix, on_exit, enabled

    def __enter__(self):
        self.st = time.perf_counter_ns()

    def __exit__(self, *exc):
        self.et = time.perf_counter_ns() - self.st
        if self.enabled:
            print(f"{self.prefix}{self.et*1e-6:6.2f} ms" + (self.on_exit(self.et) if self.on_exit else ""))


def dblog(*msg, enable=True):
    if enable:
        print(*msg)


def list_map(f: Callable, *xs: Any) -> List[Any]:
    return list(map(f, *xs))


def list_zip(*args: Any) -> List[Any]:
    fst, *rest = args = list_map(list, args)
    n = len(fst)
    for arg in rest:
        assert len(arg) == n
    return list(zip(*args))


def normalize_axis(axis) -> Tuple[int, ...]:
    """Unique non-negative axes, highest first."""
    if axis is None:
        axis = ()
    elif isinstance(axis, (int, np.integer)):
        axis = (axis,)
    axis = tuple(int(a) for a in axis)
    if any(a < 0 for a in axis):
        raise ShapeError(f"negative axis in {axis}, ranks are unknown while tracing")
    return tuple(sorted(set(axis), reverse=True))


# =================================
#   Errors
# =================================


class TraceError(Exception):
    pass


class MissingBindingError(TraceError, LookupError):
    pass


class ShapeError(TraceError, ValueError):
    pass


class VacuousGradError(TraceError, ValueError):
    pass


class TracingError(TraceError, RuntimeError):
    pass


# =================================
#   Dtypes
# =================================


class DType(NamedTuple):
    name: str
    numpy: type

    def __repr__(self):
        return f"<DType: {self.name}>"


class dtypes:
    float32: Final[DType] = DType("float32", np.float32)
    float64: Final[DType] = DType("float64", np.float64)

    all_dtypes = (float32, float64)
    name_dtype_map = {k.name: k for k in all_dtypes}

    @classmethod
    def get(cls, dtype: Union[DType, str]) -> DType:
        if isinstance(dtype, DType):
            return dtype
        if dtype not in cls.name_dtype_map:
            raise TypeError(f"unsupported dtype {dtype}, expected one of {tuple(cls.name_dtype_map)}")
        return cls.name_dtype_map[dtype]


# =================================
#   Graph
# =================================


class Id(NamedTuple):
    idx: int

    def __repr__(self):
        return f"%{self.idx}"


class IdAllocator:
    def __init__(self, counter: int = 0, free: Sequence[Id] = ()):
        self.counter = counter
        self.free = deque(free)

    def fresh(self) -> Id:
        if self.free:
            return self.free.popleft()
        self.counter += 1
        return Id(self.counter)

    def release(self, id: Id) -> None:
        self.free.append(id)

    def copy(self) -> "IdAllocator":
        return IdAllocator(self.counter, self.free)


class Instruction(NamedTuple):
    op: "Operator"
    inputs: Tuple[Id, ...]
    params: Dict[str, Any]
    outputs: Tuple[Id, ...]

    def eval(self, ctx: "Context") -> None:
        self.op.eval(ctx, self)

    def vjp(self, session: "TraceSession", cotangents: Sequence[Optional[Id]]) -> Optional[List[Optional[Id]]]:
        wrap = partial(TraceTensor, session)
        cotangents = [None if ct is None else wrap(ct) for ct in cotangents]
        contributions = self.op.vjp(cotangents, *map(wrap, self.inputs), *map(wrap, self.outputs), **self.params)
        if contributions is None:
            return None
        if len(contributions) != len(self.inputs):
            raise TracingError(f"{self.op.name} vjp gave {len(contributions)} gradients for {len(self.inputs)} inputs")
        return [None if g is None else session.lift(g).id for g in contributions]

    def __str__(self):
        params = " ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.op.name} {list(self.inputs)} -> {list(self.outputs)}" + (f" {params}" if params else "")


class Graph:
    def __init__(self, instructions: Optional[List[Instruction]] = None, allocator: Optional[IdAllocator] = None):
        self.instructions: List[Instruction] = [] if instructions is None else instructions
        self.allocator = IdAllocator() if allocator is None else allocator

    def fresh(self) -> Id:
        return self.allocator.fresh()

    def push(self, instruction: Instruction) -> None:
        self.instructions.append(instruction)

    def clone(self) -> "Graph":
        return Graph(list(self.instructions), self.allocator.copy())

    def __len__(self):
        return len(self.instructions)

    def __iter__(self):
        return iter(self.instructions)

    def __str__(self):
        return "\n".join(f"{i}: {instruction}" for i, instruction in enumerate(self.instructions))

    def __repr__(self):
        return f"<Graph: {len(self)} instructions>"


def check_graph(graph: Graph, inputs: Sequence[Id], outputs: Sequence[Id]) -> None:
    env: Set[Id] = set()
    input_nodes: Set[Id] = set()

    for instruction in graph:
        for x in instruction.inputs:
            if x not in env:
                raise MissingBindingError(f"{x} is read by {instruction.op.name} before it is produced")
        for y in instruction.outputs:
            if y in env:
                raise TracingError(f"{y} is produced twice")
            env.add(y)
        if instruction.op is backend.operator_set.input:
            input_nodes.update(instruction.outputs)

    for x in inputs:
        if x not in input_nodes:
            raise TracingError(f"declared input {x} is not produced by an input instruction")
    for y in outputs:
        if y not in env:
            raise MissingBindingError(f"output {y} is never produced")


# =================================
#   Operator
# =================================


class Operator:
    def __init__(self, name):
        self.name = name

    def __hash__(self):
        return hash(self.name)

    def __eq__(self, other):
        if not isinstance(other, Operator):
            return False
        return self.name == other.name

    def __repr__(self) -> str:
        return f"<{self.name}>"

    def args_fixer(self, *args, **params):
        return args, params

    def eval(self, ctx: "Context", instruction: Instruction) -> None:
        args = [ctx.get(x) for x in instruction.inputs]
        try:
            out = backend.run_impl(self, *args, **instruction.params)
        except ShapeError:
            raise
        except ValueError as e:
            raise ShapeError(f"{self.name}: {e}") from e
        ctx.insert(instruction.outputs[0], backend.tensor(out, ctx.dtype))

    def vjp(self, cotangents, *args, **params):
        raise NotImplementedError


class InitOperator(Operator):
    def vjp(self, cotangents, *args, **params):
        return None


class UnaryOperator(Operator):
    def args_fixer(self, x):
        return (x,), {}


class BinaryOperator(Operator):
    def args_fixer(self, x, w):
        return (x, w), {}

    @staticmethod
    def unbroadcast(g, like):
        return g.reduce_to_like(like)


class ReduceOperator(Operator):
    def args_fixer(self, x, axis=(), keep_dims=False):
        return (x,), dict(axis=normalize_axis(axis), keep_dims=bool(keep_dims))


class ShapeOperator(Operator):
    @staticmethod
    def fix_shape(shape) -> Tuple[int, ...]:
        if isinstance(shape, (int, np.integer)):
            shape = (shape,)
        return tuple(int(d) for d in shape)


class GradMaskOperator(Operator):
    def vjp(self, cotangents, *args, **params):
        return None


class OperatorSet:
    def register(self, name, aliases=()):
        def wrap(op_cls):
            assert name not in vars(self)
            op = op_cls(name)
            setattr(self, name, op)
            for a in aliases:
                setattr(self, a, op)
            return op_cls

        return wrap


# =================================
#   Backend
# =================================


class Backend:
    LOG_GRAPH = int(os.environ.get("LOG_GRAPH", 0))
    LOG_GRAD = int(os.environ.get("LOG_GRAD", 0))
    LOG_EVAL = int(os.environ.get("LOG_EVAL", 0))
    LOG_BACKEND = int(os.environ.get("LOG_BACKEND", 0))
    LOG_INIT = int(os.environ.get("LOG_INIT", 0))
    DEFAULT_DTYPE = dtypes.get(os.environ.get("DEFAULT_DTYPE", "float32"))

    def __init__(self, operator_set: OperatorSet):
        self.operator_set = operator_set
        self.impls = dict()

    def set_impl(self, op: Operator):
        def set_impl_(fn):
            self.impls[op] = types.MethodType(fn, self)
            return fn

        return set_impl_

    def run_impl(self, op: Operator, *args, **params):
        if op not in self.impls:
            raise NotImplementedError(f"{op.name} has no implementation in {self}")
        return self.impls[op](*args, **params)

    def tensor(self, val, dtype: DType):
        raise NotImplementedError

    def full(self, shape, fill_value, dtype: DType):
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__}>"


class UndefBackend:
    def __getattr__(self, attr):
        raise NotImplementedError("Backend not init yet with tracegrad.core.set_backend(backend)")


backend = UndefBackend()


def set_backend(name, where="tracegrad.backends"):
    global backend
    backend = importlib.import_module(f"{where}.{name}").backend
    dblog(f"tracegrad backend is {backend}", enable=backend.LOG_INIT)


# =================================
#   Context
# =================================


class Context:
    def __init__(self, dtype: DType):
        self.env: Dict[Id, Any] = {}
        self.dtype = dtype

    def insert(self, id: Id, value: Any) -> None:
        self.env[id] = value

    def get(self, id: Id) -> Any:
        if id not in self.env:
            raise MissingBindingError(f"{id} has no value in this context")
        return self.env[id]

    def __contains__(self, id):
        return id in self.env


# =================================
#   Tracing
# =================================


class TraceTensor:
    PYTHON_TYPES = (bool, int, float, np.number)
    __array_ufunc__ = None

    def __init__(self, session: "TraceSession", id: Id):
        self.session = session
        self.id = id

    def __repr__(self):
        return f"TraceTensor({self.id})"

    def __getattr__(self, attr):
        if attr.startswith("_") or attr in ("session", "id"):
            raise AttributeError(attr)
        return partial(getattr(self.session, attr), self)

    def __neg__(self):
        return self.session.neg(self)

    def __add__(self, other):
        return self.session.add(self, other)

    def __radd__(self, other):
        return self.session.add(other, self)

    def __sub__(self, other):
        return self.session.sub(self, other)

    def __rsub__(self, other):
        return self.session.sub(other, self)

    def __mul__(self, other):
        return self.session.mul(self, other)

    def __rmul__(self, other):
        return self.session.mul(other, self)

    def __truediv__(self, other):
        return self.session.div(self, other)

    def __rtruediv__(self, other):
        return self.session.div(other, self)

    def __matmul__(self, other):
        return self.session.matmul(self, other)

    def __rmatmul__(self, other):
        return self.session.matmul(other, self)


class TraceSession:
    def __init__(self, graph: Graph):
        self.graph = graph
        self.closed = False

    def __getattr__(self, attr):
        if attr.startswith("_") or attr in ("graph", "closed"):
            raise AttributeError(attr)
        op = getattr(backend.operator_set, attr, None)
        if not isinstance(op, Operator):
            raise AttributeError(f"{attr} is not a registered operator")
        return partial(self.bind, op)

    def check_open(self):
        if self.closed:
            raise TracingError("trace session is closed, placeholders can only be used while tracing")

    def emit(self, instruction: Instruction, out: Id) -> TraceTensor:
        self.check_open()
        self.graph.push(instruction)
        return TraceTensor(self, out)

    def bind(self, op: Operator, *args, **params) -> TraceTensor:
        self.check_open()
        args, params = op.args_fixer(*args, **params)
        inputs = tuple(self.lift(x).id for x in args)
        out = self.graph.fresh()
        return self.emit(Instruction(op, inputs, params, (out,)), out)

    def lift(self, x) -> TraceTensor:
        if isinstance(x, TraceTensor):
            if x.session is not self:
                raise TracingError(f"{x} belongs to another trace session")
            return x
        elif isinstance(x, Id):
            return TraceTensor(self, x)
        elif isinstance(x, TraceTensor.PYTHON_TYPES):
            return self.constant(x)
        raise TypeError(f"cannot trace {type(x).__name__} value {x!r}, expected a placeholder or a Python scalar")

    def input(self) -> TraceTensor:
        return self.bind(backend.operator_set.input)

    def constant(self, value) -> TraceTensor:
        return self.bind(backend.operator_set.constant, value=value)

    def close(self):
        self.closed = True

    def __repr__(self):
        return f"<TraceSession: {len(self.graph)} instructions{', closed' if self.closed else ''}>"


def as_id(session: TraceSession, x) -> Id:
    if isinstance(x, Id):
        return x
    if isinstance(x, TraceTensor):
        if x.session is not session:
            raise TracingError(f"{x} belongs to another trace session")
        return x.id
    raise TypeError(f"expected a placeholder or an Id, got {type(x).__name__}")


# =================================
#   Traceable function
# =================================


class TraceableFunction:
    def __init__(
        self,
        graph: Graph,
        inputs: Sequence[Id],
        outputs: Sequence[Id],
        name: str = "f",
        dtype: Optional[DType] = None,
    ):
        self.graph = graph
        self.inputs = tuple(inputs)
        self.outputs = tuple(outputs)
        self.name = name
        self.dtype = backend.DEFAULT_DTYPE if dtype is None else dtypes.get(dtype)

    def eval(self) -> Callable[..., Tuple[Any, ...]]:
        def run(*args):
            if len(args) != len(self.inputs):
                raise TypeError(f"{self.name} takes {len(self.inputs)} arguments but {len(args)} were given")
            ctx = Context(self.dtype)
            with Timing(f"eval {self.name}: ", enabled=backend.LOG_EVAL):
                for x, val in list_zip(self.inputs, args):
                    ctx.insert(x, backend.tensor(val, self.dtype))
                for instruction in self.graph:
                    dblog(f"  {instruction}", enable=backend.LOG_EVAL)
                    instruction.eval(ctx)
            return tuple(ctx.get(y) for y in self.outputs)

        return run

    def __call__(self, *args):
        outs = self.eval()(*args)
        return outs[0] if len(outs) == 1 else outs

    def grad(self, argnums: Union[int, Sequence[int], None] = None) -> "TraceableFunction":
        return self.backward(argnums, with_value=False)

    def value_and_grad(self, argnums: Union[int, Sequence[int], None] = None) -> "TraceableFunction":
        return self.backward(argnums, with_value=True)

    def backward(self, argnums, with_value: bool) -> "TraceableFunction":
        if len(self.outputs) == 0:
            raise VacuousGradError(f"cannot differentiate {self.name}, it has no outputs")
        if argnums is None:
            argnums = tuple(range(len(self.inputs)))
        elif isinstance(argnums, int):
            argnums = (argnums,)

        graph = self.graph.clone()
        s = TraceSession(graph)
        outs = [TraceTensor(s, y) for y in self.outputs]
        objective = outs[0]
        for y in outs[1:]:
            objective = objective + y
        objective = objective.sum()

        n_forward = len(graph)
        ct_env: Dict[Id, Id] = {objective.id: s.constant(1.0).id}
        for instruction in graph.instructions[:n_forward][::-1]:
            cotangents = [ct_env.get(y) for y in instruction.outputs]
            if all(ct is None for ct in cotangents):
                continue
            contributions = instruction.vjp(s, cotangents)
            if contributions is None:
                continue
            for x, ct in list_zip(instruction.inputs, contributions):
                if ct is None:
                    continue
                ct_env[x] = s.add(ct_env[x], ct).id if x in ct_env else ct

        grads = []
        for i in argnums:
            x = self.inputs[i]
            if x not in ct_env:
                ct_env[x] = s.broadcast_like(0.0, x).id
            grads += [ct_env[x]]
        s.close()

        outputs = ([objective.id] if with_value else []) + grads
        name = f"{'value_and_' if with_value else ''}grad_{self.name}"
        grad_fn = TraceableFunction(graph, self.inputs, outputs, name, self.dtype)
        check_graph(graph, grad_fn.inputs, grad_fn.outputs)
        dblog(grad_fn.pprint(), enable=backend.LOG_GRAD)
        return grad_fn

    def pprint(self) -> str:
        lines = [f"def {self.name}({', '.join(map(repr, self.inputs))}):"]
        for instruction in self.graph:
            if instruction.op is backend.operator_set.input:
                continue
            args = [repr(x) for x in instruction.inputs]
            args += [f"{k}={v!r}" for k, v in instruction.params.items()]
            outs = ", ".join(map(repr, instruction.outputs))
            lines += [f"    {outs} = {instruction.op.name}({', '.join(args)})"]
        lines += [f"    return {', '.join(map(repr, self.outputs))}"]
        return "\n".join(lines)

    def __repr__(self):
        return self.pprint()


def trace_fn(builder: Callable, dtype: Union[DType, str, None] = None, name: Optional[str] = None) -> TraceableFunction:
    graph = Graph()
    session = TraceSession(graph)
    try:
        inputs, out = builder(session)
    finally:
        session.close()
    outs = out if isinstance(out, (list, tuple)) else (out,)
    inputs = [as_id(session, x) for x in inputs]
    outputs = [as_id(session, y) for y in outs]
    if name is None:
        name = getattr(builder, "__name__", "f")
        if name.startswith("<"):
            name = "f"
    fn = TraceableFunction(graph, inputs, outputs, name, dtype)
    check_graph(graph, fn.inputs, fn.outputs)
    dblog(fn.pprint(), enable=backend.LOG_GRAPH)
    return fn


def trace(f: Optional[Callable] = None, *, dtype: Union[DType, str, None] = None):
    if f is None:
        return partial(trace, dtype=dtype)
    n_args = sum(
        1
        for p in inspect.signature(f).parameters.values()
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD) and p.default is p.empty
    )

    def builder(session):
        xs = [session.input() for _ in range(n_args)]
        return xs, f(*xs)

    builder.__name__ = getattr(f, "__name__", "f")
    return trace_fn(builder, dtype)
