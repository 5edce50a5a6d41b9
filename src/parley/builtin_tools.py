"""The local tools offered to models that support tool calling.

Every handler returns a tagged payload ``{"type", "data", "text"}``:
``data`` is for presentation, ``text`` is the summary sent back to the
model. Bad input is reported inside the payload rather than raised.
"""

import ast
import base64
import binascii
import colorsys
import io
import json
import math
import operator
import re
import secrets
import string

import qrcode
import qrcode.image.svg

from parley.human_input import HumanInputBroker, HumanInputField
from parley.tools import Tool, ToolRegistry


def _payload(type_: str, data: dict, text: str) -> dict:
    return {"type": type_, "data": data, "text": text}


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return str(value)


# ---------------------------------------------------------------------------
# calculator
# ---------------------------------------------------------------------------

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_NAMES = {"pi": math.pi, "e": math.e, "tau": math.tau}
_FUNCS = {
    name: getattr(math, name)
    for name in (
        "sqrt", "sin", "cos", "tan", "asin", "acos", "atan", "sinh", "cosh",
        "tanh", "log", "log10", "log2", "exp", "floor", "ceil", "factorial",
        "degrees", "radians",
    )
}
_FUNCS.update({"abs": abs, "round": round, "min": min, "max": max})
_MAX_EXPONENT = 10_000


def _eval_node(node):
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError("Exponent too large")
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Name) and node.id in _NAMES:
        return _NAMES[node.id]
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) \
            and node.func.id in _FUNCS and not node.keywords:
        return _FUNCS[node.func.id](*[_eval_node(a) for a in node.args])
    raise ValueError(f"Unsupported expression element: {ast.dump(node)[:40]}")


def evaluate(expression: str):
    """Evaluate an arithmetic expression without ``eval``."""
    tree = ast.parse(expression.replace("^", "**"), mode="eval")
    return _eval_node(tree)


def calculator(expression: str) -> dict:
    try:
        result = evaluate(expression)
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as e:
        msg = str(e) or type(e).__name__
        return _payload("calculator", {"expression": expression, "error": msg}, f"Error: {msg}")
    return _payload(
        "calculator",
        {"expression": expression, "result": result},
        f"{expression} = {_format_number(result)}",
    )


# ---------------------------------------------------------------------------
# unit_converter
# ---------------------------------------------------------------------------

# factor to the base unit of each dimension
_UNITS: dict[str, tuple[str, float]] = {
    "m": ("length", 1.0), "km": ("length", 1000.0), "cm": ("length", 0.01),
    "mm": ("length", 0.001), "um": ("length", 1e-6), "mi": ("length", 1609.344),
    "yd": ("length", 0.9144), "ft": ("length", 0.3048), "in": ("length", 0.0254),
    "nmi": ("length", 1852.0),
    "kg": ("mass", 1.0), "g": ("mass", 0.001), "mg": ("mass", 1e-6),
    "t": ("mass", 1000.0), "lb": ("mass", 0.45359237), "oz": ("mass", 0.028349523125),
    "st": ("mass", 6.35029318),
    "l": ("volume", 1.0), "ml": ("volume", 0.001), "m3": ("volume", 1000.0),
    "gal": ("volume", 3.785411784), "qt": ("volume", 0.946352946),
    "pt": ("volume", 0.473176473), "cup": ("volume", 0.2365882365),
    "floz": ("volume", 0.0295735295625),
    "m/s": ("speed", 1.0), "kph": ("speed", 1 / 3.6), "mph": ("speed", 0.44704),
    "knot": ("speed", 0.514444),
    "s": ("time", 1.0), "ms": ("time", 0.001), "min": ("time", 60.0),
    "h": ("time", 3600.0), "day": ("time", 86400.0), "week": ("time", 604800.0),
    "b": ("data", 1.0), "kb": ("data", 1e3), "mb": ("data", 1e6),
    "gb": ("data", 1e9), "tb": ("data", 1e12),
}
_ALIASES = {
    "meter": "m", "metre": "m", "kilometer": "km", "kilometre": "km",
    "centimeter": "cm", "millimeter": "mm", "mile": "mi", "yard": "yd",
    "foot": "ft", "feet": "ft", "inch": "in", "inches": "in",
    "kilogram": "kg", "gram": "g", "milligram": "mg", "tonne": "t",
    "pound": "lb", "lbs": "lb", "ounce": "oz", "stone": "st",
    "liter": "l", "litre": "l", "milliliter": "ml", "gallon": "gal",
    "quart": "qt", "pint": "pt", "fl oz": "floz",
    "kmh": "kph", "km/h": "kph", "knots": "knot", "kn": "knot",
    "sec": "s", "second": "s", "minute": "min", "hour": "h", "hr": "h",
    "days": "day", "weeks": "week", "byte": "b", "bytes": "b",
    "c": "celsius", "°c": "celsius", "f": "fahrenheit", "°f": "fahrenheit",
    "k": "kelvin",
}
_TEMPERATURES = ("celsius", "fahrenheit", "kelvin")


def _normalize_unit(unit: str) -> str:
    u = unit.strip().lower()
    if u in _UNITS or u in _TEMPERATURES:
        return u
    if u in _ALIASES:
        return _ALIASES[u]
    if u.endswith("s") and u[:-1] in _ALIASES:
        return _ALIASES[u[:-1]]
    raise ValueError(f"Unknown unit '{unit}'")


def _to_kelvin(value: float, unit: str) -> float:
    if unit == "celsius":
        return value + 273.15
    if unit == "fahrenheit":
        return (value - 32) * 5 / 9 + 273.15
    return value


def _from_kelvin(value: float, unit: str) -> float:
    if unit == "celsius":
        return value - 273.15
    if unit == "fahrenheit":
        return (value - 273.15) * 9 / 5 + 32
    return value


def convert_units(value: float, from_unit: str, to_unit: str) -> float:
    src, dst = _normalize_unit(from_unit), _normalize_unit(to_unit)
    if src in _TEMPERATURES or dst in _TEMPERATURES:
        if not (src in _TEMPERATURES and dst in _TEMPERATURES):
            raise ValueError(f"Cannot convert {from_unit} to {to_unit}")
        return _from_kelvin(_to_kelvin(value, src), dst)
    src_dim, src_factor = _UNITS[src]
    dst_dim, dst_factor = _UNITS[dst]
    if src_dim != dst_dim:
        raise ValueError(f"Cannot convert {src_dim} to {dst_dim}")
    return value * src_factor / dst_factor


def unit_converter(value: float, from_unit: str, to_unit: str) -> dict:
    data = {"value": value, "fromUnit": from_unit, "toUnit": to_unit}
    try:
        result = round(convert_units(float(value), from_unit, to_unit), 8)
    except (ValueError, TypeError) as e:
        return _payload("unit_converter", {**data, "error": str(e)}, f"Error: {e}")
    formatted = _format_number(result)
    return _payload(
        "unit_converter", {**data, "result": result},
        f"{value} {from_unit} = {formatted} {to_unit}",
    )


# ---------------------------------------------------------------------------
# generate_qr_code
# ---------------------------------------------------------------------------

_ERROR_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


def generate_qr_code(text: str, error_correction_level: str = "M") -> dict:
    level = error_correction_level.upper() if error_correction_level else "M"
    if level not in _ERROR_LEVELS:
        level = "M"
    qr = qrcode.QRCode(error_correction=_ERROR_LEVELS[level], border=2)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    data_url = "data:image/svg+xml;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
    return _payload(
        "qrcode",
        {"text": text, "dataURL": data_url, "errorLevel": level},
        f'QR code generated for: "{text[:80]}"',
    )


# ---------------------------------------------------------------------------
# format_json
# ---------------------------------------------------------------------------

def format_json(json_text: str, indent: int = 2) -> dict:
    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as e:
        return _payload(
            "json_formatter", {"raw": json_text, "error": str(e), "valid": False},
            f"Invalid JSON: {e}",
        )
    formatted = json.dumps(parsed, indent=int(indent), ensure_ascii=False)
    if isinstance(parsed, list):
        summary = f"{len(parsed)} items"
    elif isinstance(parsed, dict):
        summary = f"{len(parsed)} keys"
    else:
        summary = type(parsed).__name__
    return _payload(
        "json_formatter",
        {"formatted": formatted, "valid": True, "summary": summary, "raw": json_text},
        f"Valid JSON ({summary})\n```json\n{formatted}\n```",
    )


# ---------------------------------------------------------------------------
# generate_password
# ---------------------------------------------------------------------------

_SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?"


def generate_password(
    length: int = 16,
    uppercase: bool = True,
    lowercase: bool = True,
    numbers: bool = True,
    symbols: bool = False,
) -> dict:
    length = min(128, max(4, int(length)))
    chars = ""
    if uppercase:
        chars += string.ascii_uppercase
    if lowercase:
        chars += string.ascii_lowercase
    if numbers:
        chars += string.digits
    if symbols:
        chars += _SYMBOLS
    if not chars:
        chars = string.ascii_lowercase
    password = "".join(secrets.choice(chars) for _ in range(length))
    entropy = math.floor(length * math.log2(len(chars)))
    return _payload(
        "password_generator",
        {
            "password": password, "length": length, "entropy": entropy,
            "uppercase": uppercase, "lowercase": lowercase,
            "numbers": numbers, "symbols": symbols,
        },
        f"Password: {password}\nEntropy: ~{entropy} bits",
    )


# ---------------------------------------------------------------------------
# generate_color_palette
# ---------------------------------------------------------------------------

_HEX_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def _hex_to_hsl(hex_color: str) -> tuple[float, float, float]:
    r, g, b = (int(hex_color[i:i + 2], 16) / 255 for i in (1, 3, 5))
    h, l, s = colorsys.rgb_to_hls(r, g, b)
    return h * 360, s * 100, l * 100


def _hsl_to_hex(h: float, s: float, l: float) -> str:
    r, g, b = colorsys.hls_to_rgb((h % 360) / 360, l / 100, s / 100)
    return "#" + "".join(f"{round(c * 255):02x}" for c in (r, g, b))


def generate_color_palette(base_color: str = "#3b82f6", count: int = 5, scheme: str = "analogous") -> dict:
    base = base_color.strip() if _HEX_RE.match(base_color.strip()) else "#3b82f6"
    count = min(10, max(2, int(count)))
    h, s, l = _hex_to_hsl(base)
    if scheme == "monochromatic":
        colors = [
            _hsl_to_hex(h, s, max(10, min(90, l - 30 + (60 / (count - 1)) * i)))
            for i in range(count)
        ]
    elif scheme == "complementary":
        colors = [base.lower(), _hsl_to_hex(h + 180, s, l)]
        colors += [_hsl_to_hex(h + 180 * i / count, s, l) for i in range(2, count)]
    else:
        scheme = "analogous"
        spread = 30
        colors = [
            _hsl_to_hex(h - spread + (2 * spread / (count - 1)) * i, s, l)
            for i in range(count)
        ]
    return _payload(
        "color_palette",
        {"colors": colors, "baseColor": base, "scheme": scheme, "count": count},
        f"Color palette ({scheme}): {', '.join(colors)}",
    )


# ---------------------------------------------------------------------------
# test_regex
# ---------------------------------------------------------------------------

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def regex_tester(pattern: str, text: str, flags: str = "g") -> dict:
    data = {"pattern": pattern, "flags": flags, "text": text}
    compiled_flags = 0
    for f in flags:
        compiled_flags |= _REGEX_FLAGS.get(f, 0)
    try:
        regex = re.compile(pattern, compiled_flags)
    except re.error as e:
        return _payload("regex_tester", {**data, "error": str(e), "valid": False}, f"Invalid regex: {e}")
    found = regex.finditer(text) if "g" in flags else filter(None, [regex.search(text)])
    matches = [
        {"match": m.group(0), "index": m.start(), "groups": m.groupdict() or None}
        for m in found
    ]
    plural = "" if len(matches) == 1 else "es"
    return _payload(
        "regex_tester",
        {**data, "matches": matches, "count": len(matches), "valid": True},
        f"Found {len(matches)} match{plural} for /{pattern}/{flags}",
    )


# ---------------------------------------------------------------------------
# base64
# ---------------------------------------------------------------------------

def base64_codec(operation: str, input: str) -> dict:
    try:
        if operation == "decode":
            output = base64.b64decode(input, validate=True).decode("utf-8")
        else:
            operation = "encode"
            output = base64.b64encode(input.encode("utf-8")).decode("ascii")
    except (binascii.Error, UnicodeDecodeError) as e:
        return _payload("base64", {"operation": operation, "input": input, "error": str(e)}, f"Error: {e}")
    suffix = "…" if len(output) > 100 else ""
    return _payload(
        "base64", {"operation": operation, "input": input, "output": output},
        f"Base64 {operation}: {output[:100]}{suffix}",
    )


# ---------------------------------------------------------------------------
# ask_human
# ---------------------------------------------------------------------------

def _answer_text(value) -> str:
    if isinstance(value, list):
        return ", ".join(value) or "(none)"
    return value or "(blank)"


async def ask_human(broker: HumanInputBroker, question: str, fields: list | None = None) -> dict:
    parsed = [
        HumanInputField(
            key=f.get("key") or f"field_{i}",
            label=f.get("label") or f"Field {i + 1}",
            type=f.get("type") if f.get("type") in ("text", "select", "radio", "checkbox") else "text",
            options=f.get("options"),
            required=bool(f.get("required")),
        )
        for i, f in enumerate(fields or [])
    ] or [HumanInputField(key="response", label="Your response", required=True)]
    answer = await broker.request(question, parsed)
    summary = "\n".join(f"- {f.label}: {_answer_text(answer.get(f.key))}" for f in parsed)
    return _payload(
        "ask_human", {"question": question, "answer": answer},
        f'Human response for "{question}":\n{summary}',
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _schema(properties: dict, required: list[str] | None = None) -> dict:
    return {"type": "object", "properties": properties, "required": required or []}


BUILTIN_TOOLS: list[Tool] = [
    Tool(
        func=calculator,
        name="calculator",
        description=(
            "Evaluate a mathematical expression. Supports arithmetic, powers, "
            "trigonometry and logarithms. Use this when the user asks to calculate something."
        ),
        parameters_schema=_schema({
            "expression": {"type": "string", "description": "The expression to evaluate, e.g. '2 * (3 + 4)' or 'sin(pi/4)'"},
        }, ["expression"]),
    ),
    Tool(
        func=unit_converter,
        name="unit_converter",
        description="Convert a value from one unit to another (length, mass, volume, speed, time, data, temperature).",
        parameters_schema=_schema({
            "value": {"type": "number", "description": "The numeric value to convert"},
            "from_unit": {"type": "string", "description": "Source unit (e.g. 'km', 'kg', 'celsius', 'mph')"},
            "to_unit": {"type": "string", "description": "Target unit (e.g. 'm', 'lb', 'fahrenheit', 'kph')"},
        }, ["value", "from_unit", "to_unit"]),
    ),
    Tool(
        func=generate_qr_code,
        name="generate_qr_code",
        description="Generate a QR code for any text or URL. Returns an image the user can scan.",
        parameters_schema=_schema({
            "text": {"type": "string", "description": "The text or URL to encode"},
            "error_correction_level": {
                "type": "string", "enum": ["L", "M", "Q", "H"],
                "description": "Error correction level: L=7%, M=15%, Q=25%, H=30%. Default: M",
            },
        }, ["text"]),
    ),
    Tool(
        func=lambda json, indent=2: format_json(json, indent),
        name="format_json",
        description="Format, validate and pretty-print a JSON string, reporting how many keys or items it has.",
        parameters_schema=_schema({
            "json": {"type": "string", "description": "The JSON string to format and validate"},
            "indent": {"type": "number", "description": "Spaces of indentation (default: 2)"},
        }, ["json"]),
    ),
    Tool(
        func=generate_password,
        name="generate_password",
        description="Generate a cryptographically secure random password.",
        parameters_schema=_schema({
            "length": {"type": "number", "description": "Password length (default: 16)"},
            "uppercase": {"type": "boolean", "description": "Include uppercase letters (default: true)"},
            "lowercase": {"type": "boolean", "description": "Include lowercase letters (default: true)"},
            "numbers": {"type": "boolean", "description": "Include numbers (default: true)"},
            "symbols": {"type": "boolean", "description": "Include symbols (default: false)"},
        }),
    ),
    Tool(
        func=generate_color_palette,
        name="generate_color_palette",
        description="Generate a color palette from a base color. Returns hex codes.",
        parameters_schema=_schema({
            "base_color": {"type": "string", "description": "Base color as hex code (e.g. '#3b82f6')"},
            "count": {"type": "number", "description": "Number of colors (2-10, default: 5)"},
            "scheme": {
                "type": "string", "enum": ["analogous", "complementary", "monochromatic"],
                "description": "Color scheme (default: analogous)",
            },
        }),
    ),
    Tool(
        func=regex_tester,
        name="test_regex",
        description="Test a regular expression against text. Returns all matches with their positions.",
        parameters_schema=_schema({
            "pattern": {"type": "string", "description": "The regex pattern (without delimiters)"},
            "flags": {"type": "string", "description": "Flags, e.g. 'gi' for global case-insensitive"},
            "text": {"type": "string", "description": "The text to test against"},
        }, ["pattern", "text"]),
    ),
    Tool(
        func=base64_codec,
        name="base64",
        description="Encode or decode a string using Base64.",
        parameters_schema=_schema({
            "operation": {"type": "string", "enum": ["encode", "decode"], "description": "Whether to encode or decode"},
            "input": {"type": "string", "description": "The string to encode or decode"},
        }, ["operation", "input"]),
    ),
]

ASK_HUMAN = Tool(
    func=ask_human,
    name="ask_human",
    description=(
        "Ask the user a question and wait for their answer. Use when you need "
        "information only the user can provide."
    ),
    parameters_schema=_schema({
        "question": {"type": "string", "description": "The question to show the user"},
        "fields": {
            "type": "array",
            "description": "Optional form fields: objects with key, label, type (text|select|radio|checkbox), options, required",
            "items": {"type": "object"},
        },
    }, ["question"]),
)


def builtin_registry(broker: HumanInputBroker | None = None) -> ToolRegistry:
    """Registry of the builtin tools; ``ask_human`` needs a *broker*."""
    registry = ToolRegistry(BUILTIN_TOOLS)
    if broker is not None:
        registry.register(ASK_HUMAN.bind(broker=broker))
    return registry
