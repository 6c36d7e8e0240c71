from typing import Any, Dict, Iterable, List

from llamachat.models import Message

WEB_SEARCH_TOOL_NAME = "builtin_web_search"

DEFAULT_PARAMETERS: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {},
    "additionalProperties": True,
}


def normalize_tool_name(name: Any) -> str:
    return "" if name is None else str(name).strip()


def prepared_query(messages: Iterable[Message]) -> str:
    """Latest non-empty user message, used to seed search tools."""
    for message in reversed(list(messages)):
        if message.role != "user":
            continue
        text = (message.content or "").strip()
        if text:
            return text
    return ""


class ToolRegistry:
    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}

    def register_tool(self, name: str, description: str, parameters: Dict[str, Any]):
        self.tools[name] = {
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": parameters,
            },
        }

    def tool_from_mcp(self, tool: Dict[str, Any]) -> Dict[str, Any] | None:
        name = normalize_tool_name(tool.get("name"))
        if not name:
            return None
        description = tool.get("description") if isinstance(tool.get("description"), str) else ""
        schema = tool.get("inputSchema")
        return {
            "type": "function",
            "function": {
                "name": name,
                "description": description.strip() or f"MCP tool: {name}",
                "parameters": schema if isinstance(schema, dict) else dict(DEFAULT_PARAMETERS),
            },
        }

    def set_mcp_tools(self, data: Dict[str, Any] | None):
        """Replace the registered tools with those listed by the MCP endpoint.

        ``data`` carries either a flat ``tools`` list or a ``servers`` mapping
        whose entries each list their own ``tools``. The first definition of
        a name wins.
        """
        data = data or {}
        listed = data.get("tools") if isinstance(data.get("tools"), list) else []
        if not listed and isinstance(data.get("servers"), dict):
            for server in data["servers"].values():
                if isinstance(server, dict) and isinstance(server.get("tools"), list):
                    listed.extend(server["tools"])

        self.tools = {}
        for tool in listed:
            if not isinstance(tool, dict):
                continue
            definition = self.tool_from_mcp(tool)
            if definition is None:
                continue
            fn = definition["function"]
            if fn["name"] not in self.tools:
                self.register_tool(fn["name"], fn["description"], fn["parameters"])

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        return list(self.tools.values())

    def enabled_tools(self, names: Iterable[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        seen = set()
        for raw in names:
            name = normalize_tool_name(raw)
            if not name or name in seen or name not in self.tools:
                continue
            out.append(self.tools[name])
            seen.add(name)
        return out

    def web_search_tool(self, query: str = "") -> Dict[str, Any]:
        description = (
            "Web search tool for finding current information, news, and real-time data "
            "from the internet.\n\nThis tool has been configured with search parameters based "
            "on the conversation context."
        )
        query = (query or "").strip()
        if query:
            description += f'\n- Prepared queries: "{query}"'
        description += (
            "\n\nYou can use this tool as-is to search with the prepared queries, or provide "
            "additionalContext to refine or replace the search terms."
        )
        return {
            "type": "function",
            "function": {
                "name": WEB_SEARCH_TOOL_NAME,
                "description": description,
                "parameters": {
                    "$schema": "http://json-schema.org/draft-07/schema#",
                    "type": "object",
                    "properties": {
                        "additionalContext": {
                            "description": "Optional additional context, keywords, or specific "
                            "focus to enhance the search",
                            "type": "string",
                        }
                    },
                    "required": ["additionalContext"],
                    "additionalProperties": False,
                },
            },
        }

    def tools_for_request(
        self, web_search: bool, enabled: Iterable[str], query: str = ""
    ) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        if web_search:
            tools.append(self.web_search_tool(query))
        tools.extend(self.enabled_tools(enabled))
        return tools
