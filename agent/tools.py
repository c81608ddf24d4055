"""
Tool definitions for Anthropic tool use.

Both comparison panels expose exactly one tool: Python execution in the
panel's sandbox. Uploaded files live at ``/home/user/{filename}``.
"""

from .llm.base import FunctionSchema

EXECUTE_PYTHON = "execute_python"

TOOLS = [
    {
        "name": EXECUTE_PYTHON,
        "description": (
            "Execute Python code in a sandboxed environment. Use this to analyze "
            "data, create plots, run calculations, and process uploaded files. "
            "Files are at /home/user/{filename}. Save plots with "
            "plt.savefig('/home/user/plot.png') and they will be displayed."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Python code to execute",
                }
            },
            "required": ["code"],
        },
    },
]


def get_tool_schemas(names: list[str] | None = None) -> list[dict]:
    """Return tool schema dicts, optionally filtered by name."""
    if names is None:
        return list(TOOLS)
    wanted = set(names)
    return [t for t in TOOLS if t["name"] in wanted]


def get_function_schemas(names: list[str] | None = None) -> list[FunctionSchema]:
    """Return tool schemas as ``FunctionSchema`` objects ready for LLM adapters."""
    return [
        FunctionSchema(
            name=ts["name"],
            description=ts["description"],
            parameters=ts["parameters"],
        )
        for ts in get_tool_schemas(names=names)
    ]
