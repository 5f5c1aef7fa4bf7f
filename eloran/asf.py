"""
Additional Secondary Factor (ASF) sources.

An ASF source is one of three variants, all sampled through the same
``sample(lat, lng) -> meters`` method:

* ``ConstantAsf``   - a fixed offset in meters
* ``RasterAsf``     - a precomputed raster over a grid lattice
* ``ExpressionAsf`` - a restricted arithmetic expression of ``lat, lng``

Expressions are evaluated by a small tree-walking interpreter over the
Python ``ast`` module. Only numeric literals, arithmetic, comparisons,
conditional expressions, the names ``lat``/``lng`` and an allow-list of
math functions are accepted. Every literal is coerced to float so no
operation can grow without bound, and evaluation is checked against a
deadline at every node.
"""

import ast
import logging
import math
import operator
import threading
import time
from typing import Annotated, Any, Callable, Dict, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from .errors import AsfExpressionError, AsfTimeoutError
from .projection import GridBounds, to_planar

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 1.0
MAX_EXPRESSION_LENGTH = 512
MAX_NODES = 256

ALLOWED_FUNCTIONS: Dict[str, Callable[..., float]] = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "sinh": math.sinh,
    "cosh": math.cosh,
    "tanh": math.tanh,
    "exp": math.exp,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "sqrt": math.sqrt,
    "hypot": math.hypot,
    "floor": math.floor,
    "ceil": math.ceil,
    "radians": math.radians,
    "degrees": math.degrees,
    "pow": math.pow,
    "abs": abs,
    "min": min,
    "max": max,
}

ALLOWED_CONSTANTS: Dict[str, float] = {
    "pi": math.pi,
    "e": math.e,
    "tau": math.tau,
}

PARAMETERS = ("lat", "lng")

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: math.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_COMPARE_OPS = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}


def _normalize(source: str) -> str:
    # Accept function-body style input such as "return 100*Math.sin(lat);"
    text = source.strip().rstrip(";").strip()
    if text.startswith("return "):
        text = text[len("return "):].strip()
    return text.replace("Math.", "math.")


def compile_expression(source: str, max_length: int = MAX_EXPRESSION_LENGTH) -> ast.Expression:
    """
    Parse and validate an ASF expression.

    Args:
        source: Expression text over ``lat`` and ``lng``
        max_length: Maximum accepted source length

    Returns:
        The validated expression tree

    Raises:
        AsfExpressionError: If the text does not parse or references
            anything outside the allow-list
    """
    if len(source) > max_length:
        raise AsfExpressionError(f"expression longer than {max_length} characters", source)

    text = _normalize(source)
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise AsfExpressionError(f"cannot parse expression: {e.msg}", source) from e

    nodes = list(ast.walk(tree))
    if len(nodes) > MAX_NODES:
        raise AsfExpressionError("expression too complex", source)

    for node in nodes:
        _check_node(node, source)
    return tree


def _check_node(node: ast.AST, source: str) -> None:
    if isinstance(node, (ast.Expression, ast.Load, ast.IfExp, ast.Compare, ast.BoolOp,
                         ast.And, ast.Or)):
        return
    if isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPS:
            raise AsfExpressionError(f"operator not allowed: {type(node.op).__name__}", source)
        return
    if isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPS:
            raise AsfExpressionError(f"operator not allowed: {type(node.op).__name__}", source)
        return
    if type(node) in _BINARY_OPS or type(node) in _UNARY_OPS or type(node) in _COMPARE_OPS:
        return
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise AsfExpressionError(f"literal not allowed: {node.value!r}", source)
        return
    if isinstance(node, ast.Name):
        if node.id in PARAMETERS or node.id in ALLOWED_CONSTANTS or node.id in ALLOWED_FUNCTIONS:
            return
        if node.id == "math":
            return
        raise AsfExpressionError(f"forbidden identifier: {node.id}", source)
    if isinstance(node, ast.Attribute):
        if (isinstance(node.value, ast.Name) and node.value.id == "math"
                and (node.attr in ALLOWED_FUNCTIONS or node.attr in ALLOWED_CONSTANTS)):
            return
        raise AsfExpressionError(f"forbidden attribute: {node.attr}", source)
    if isinstance(node, ast.Call):
        if node.keywords:
            raise AsfExpressionError("keyword arguments not allowed", source)
        if _function_name(node.func) is None:
            raise AsfExpressionError("only allow-listed math functions may be called", source)
        return
    raise AsfExpressionError(f"syntax not allowed: {type(node).__name__}", source)


def _function_name(func: ast.AST) -> Optional[str]:
    if isinstance(func, ast.Name) and func.id in ALLOWED_FUNCTIONS:
        return func.id
    if (isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name)
            and func.value.id == "math" and func.attr in ALLOWED_FUNCTIONS):
        return func.attr
    return None


class _Interpreter:
    """Walks a validated expression tree with a wall-clock deadline."""

    def __init__(self, lat: float, lng: float, deadline: float, source: str):
        self.env = {"lat": float(lat), "lng": float(lng)}
        self.deadline = deadline
        self.source = source

    def run(self, node: ast.AST) -> Any:
        if time.monotonic() > self.deadline:
            raise AsfTimeoutError("expression evaluation timed out", self.source)

        if isinstance(node, ast.Expression):
            return self.run(node.body)
        if isinstance(node, ast.Constant):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id in self.env:
                return self.env[node.id]
            if node.id in ALLOWED_CONSTANTS:
                return ALLOWED_CONSTANTS[node.id]
            raise AsfExpressionError(f"{node.id} is not a value", self.source)
        if isinstance(node, ast.Attribute):
            if node.attr in ALLOWED_CONSTANTS:
                return ALLOWED_CONSTANTS[node.attr]
            raise AsfExpressionError(f"math.{node.attr} is not a value", self.source)
        if isinstance(node, ast.BinOp):
            left = self.run(node.left)
            right = self.run(node.right)
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self.run(node.operand))
        if isinstance(node, ast.Compare):
            left = self.run(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.run(comparator)
                if not _COMPARE_OPS[type(op)](left, right):
                    return 0.0
                left = right
            return 1.0
        if isinstance(node, ast.BoolOp):
            values = [self.run(v) for v in node.values]
            if isinstance(node.op, ast.And):
                return 1.0 if all(values) else 0.0
            return 1.0 if any(values) else 0.0
        if isinstance(node, ast.IfExp):
            return self.run(node.body) if self.run(node.test) else self.run(node.orelse)
        if isinstance(node, ast.Call):
            fn = ALLOWED_FUNCTIONS[_function_name(node.func)]
            return float(fn(*[self.run(arg) for arg in node.args]))
        raise AsfExpressionError(f"syntax not allowed: {type(node).__name__}", self.source)


def evaluate_expression(
    tree: ast.Expression,
    lat: float,
    lng: float,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    source: str = "",
) -> float:
    """
    Evaluate a compiled expression at one point.

    Raises:
        AsfTimeoutError: If evaluation exceeds ``timeout_seconds``
        AsfExpressionError: On any runtime failure or a non-finite result
    """
    interpreter = _Interpreter(lat, lng, time.monotonic() + timeout_seconds, source)
    try:
        value = interpreter.run(tree)
    except AsfExpressionError:
        raise
    except (ArithmeticError, ValueError, TypeError) as e:
        raise AsfExpressionError(f"evaluation failed: {e}", source) from e

    value = float(value)
    if not math.isfinite(value):
        raise AsfExpressionError("expression produced a non-finite value", source)
    return value


class ConstantAsf(BaseModel):
    """A fixed ASF contribution."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["constant"] = "constant"
    meters: float = Field(0.0, description="ASF contribution in meters")

    def sample(self, lat: float, lng: float) -> float:
        return self.meters

    def sample_many(self, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
        return np.full(np.shape(lats), self.meters, dtype=float)


class RasterAsf(BaseModel):
    """
    ASF values precomputed over a grid lattice.

    ``values`` is a flat row-major array of length ``nx * ny`` where row
    ``j`` holds the lattice points with northing index ``j``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["raster"] = "raster"
    bounds: GridBounds = Field(..., description="Lattice bounds in Web Mercator meters")
    nx: int = Field(..., ge=2, description="Lattice columns")
    ny: int = Field(..., ge=2, description="Lattice rows")
    values: np.ndarray = Field(..., description="Flat row-major ASF values in meters")

    @field_validator("values", mode="before")
    @classmethod
    def _as_float_array(cls, v):
        return np.asarray(v, dtype=float).ravel()

    @model_validator(mode="after")
    def _check_shape(self) -> "RasterAsf":
        if self.values.size != self.nx * self.ny:
            raise ValueError(
                f"raster has {self.values.size} values, expected {self.nx * self.ny}"
            )
        if not np.all(np.isfinite(self.values)):
            raise ValueError("raster values must be finite")
        return self

    def matches(self, bounds: GridBounds, nx: int, ny: int) -> bool:
        """True when this raster is defined on exactly the given lattice."""
        return self.nx == nx and self.ny == ny and self.bounds == bounds

    def sample(self, lat: float, lng: float) -> float:
        """Bilinear lookup, clamped to the lattice edge."""
        x, y = to_planar(lat, lng)
        grid = self.values.reshape(self.ny, self.nx)
        fx = (x - self.bounds.min_x) / self.bounds.width * (self.nx - 1)
        fy = (y - self.bounds.min_y) / self.bounds.height * (self.ny - 1)
        fx = min(max(fx, 0.0), self.nx - 1.0)
        fy = min(max(fy, 0.0), self.ny - 1.0)
        i0 = min(int(math.floor(fx)), self.nx - 2)
        j0 = min(int(math.floor(fy)), self.ny - 2)
        tx = fx - i0
        ty = fy - j0
        bottom = grid[j0, i0] * (1 - tx) + grid[j0, i0 + 1] * tx
        top = grid[j0 + 1, i0] * (1 - tx) + grid[j0 + 1, i0 + 1] * tx
        return float(bottom * (1 - ty) + top * ty)

    def sample_many(self, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
        flat = [self.sample(la, ln) for la, ln in zip(np.ravel(lats), np.ravel(lngs))]
        return np.asarray(flat, dtype=float).reshape(np.shape(lats))


class ExpressionAsf(BaseModel):
    """ASF given by a sandboxed arithmetic expression of ``lat`` and ``lng`` (degrees)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["expression"] = "expression"
    expression: str = Field(..., description="Expression text returning meters")
    timeout_seconds: float = Field(
        DEFAULT_TIMEOUT_SECONDS, gt=0, description="Time bound per evaluation"
    )

    _tree: Optional[ast.Expression] = PrivateAttr(default=None)

    def compiled(self) -> ast.Expression:
        if self._tree is None:
            self._tree = compile_expression(self.expression)
        return self._tree

    def sample(self, lat: float, lng: float) -> float:
        """
        Evaluate the expression at one point.

        Raises:
            AsfExpressionError: On parse, validation, runtime or timeout failure
        """
        return evaluate_expression(
            self.compiled(), lat, lng, self.timeout_seconds, self.expression
        )

    def sample_many(
        self,
        lats: np.ndarray,
        lngs: np.ndarray,
        cancel: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """
        Evaluate the expression at every point of a lattice.

        ``cancel`` is checked before each lattice row.

        Raises:
            AsfTimeoutError: If ``cancel`` is set before sampling completes
            AsfExpressionError: If the expression fails at any point
        """
        tree = self.compiled()
        shape = np.shape(lats)
        rows_lat = np.atleast_2d(lats)
        rows_lng = np.atleast_2d(lngs)
        out = np.empty(rows_lat.shape, dtype=float)
        for j in range(rows_lat.shape[0]):
            if cancel is not None and cancel.is_set():
                raise AsfTimeoutError("ASF sampling cancelled", self.expression)
            for i in range(rows_lat.shape[1]):
                out[j, i] = evaluate_expression(
                    tree, rows_lat[j, i], rows_lng[j, i], self.timeout_seconds, self.expression
                )
        return out.reshape(shape)


AsfSource = Annotated[
    Union[ConstantAsf, RasterAsf, ExpressionAsf], Field(discriminator="kind")
]


def rasterize(
    source: Union[ConstantAsf, RasterAsf, ExpressionAsf],
    bounds: GridBounds,
    nx: int,
    ny: int,
    lats: Optional[np.ndarray] = None,
    lngs: Optional[np.ndarray] = None,
    cancel: Optional[threading.Event] = None,
) -> RasterAsf:
    """
    Sample an ASF source at every lattice point of a grid.

    Args:
        source: ASF source to sample
        bounds: Grid bounds
        nx: Lattice columns
        ny: Lattice rows
        lats: Optional precomputed (ny, nx) lattice latitudes
        lngs: Optional precomputed (ny, nx) lattice longitudes
        cancel: Optional event that stops expression sampling between rows

    Returns:
        RasterAsf defined on the grid lattice

    Raises:
        AsfExpressionError: If an expression source fails at any point
            or sampling is cancelled
    """
    if isinstance(source, RasterAsf) and source.matches(bounds, nx, ny):
        return source
    if lats is None or lngs is None:
        lats, lngs = bounds.geodetic_lattice(nx, ny)
    if isinstance(source, ExpressionAsf):
        values = source.sample_many(lats, lngs, cancel=cancel)
    else:
        values = source.sample_many(lats, lngs)
    logger.debug("Rasterized %s ASF on a %dx%d lattice", source.kind, nx, ny)
    return RasterAsf(bounds=bounds, nx=nx, ny=ny, values=values)
