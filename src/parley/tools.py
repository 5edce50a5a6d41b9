import inspect
import re
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
}


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Pull parameter descriptions out of a Google or reST docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    rest = dict(re.findall(r"^:param\s+(\w+):\s*(.+)$", doc, re.MULTILINE))
    if rest:
        return {k: v.strip() for k, v in rest.items()}

    descriptions: dict[str, str] = {}
    in_args = False
    current: str | None = None
    arg_indent: int | None = None
    for line in doc.splitlines():
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            in_args = True
            continue
        if not in_args:
            continue
        if not stripped:
            current = None
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        if arg_indent is None:
            arg_indent = indent
        match = re.match(r"(\w+)(?:\s*\([^)]*\))?:\s*(.*)$", stripped)
        if indent == arg_indent and match:
            current = match.group(1)
            descriptions[current] = match.group(2)
        elif current is not None:
            descriptions[current] += "\n" + stripped
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    signature = inspect.signature(func)
    descriptions = _parse_param_descriptions(func)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in signature.parameters.items():
        json_type = _JSON_TYPES.get(param.annotation, "string")
        properties[name] = {
            "type": json_type,
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    """A named local function the model may call.

    ``model_dump()`` returns the OpenAI function-tool schema; calling the
    tool awaits the function (sync or async) and wraps its output.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict = Field(default_factory=dict)
    bound_kwargs: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def model_dump(self, **kwargs) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def bind(self, **kwargs) -> "Tool":
        """Return a copy with *kwargs* pre-applied and hidden from the model."""
        properties = {
            k: v for k, v in self.parameters_schema.get("properties", {}).items()
            if k not in kwargs
        }
        required = [
            r for r in self.parameters_schema.get("required", [])
            if r not in kwargs
        ]
        return Tool(
            func=self.func,
            name=self.name,
            description=self.description,
            parameters_schema={**self.parameters_schema, "properties": properties, "required": required},
            bound_kwargs={**self.bound_kwargs, **kwargs},
        )

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**self.bound_kwargs, **kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Turn a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="lookup", description="...")``).
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        doc = inspect.getdoc(f) or ""
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else doc.split("\n\n")[0],
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Dispatch table from tool name to :class:`Tool`."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for t in tools:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"Duplicate tool name: '{t.name}'")
        self._tools[t.name] = t

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """Registry restricted to *names*, skipping unknown ones."""
        return ToolRegistry(self._tools[n] for n in names if n in self._tools)

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self._tools.values()]
