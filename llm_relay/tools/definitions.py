"""工具（function calling）数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 通过 ChatOptions.tools 把可用工具声明给 LLM（ToolDef / ToolParam）。
- 从厂商响应中解析出模型发起的工具调用（ToolCall）。

各适配器只需调用 ToolDef.parameters_schema() 得到 JSON Schema，
再按自家格式包装（OpenAI: function.parameters，Anthropic: input_schema）。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str = ""
    required: bool = False
    schema: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Mapping[str, ToolParam] = field(default_factory=dict)

    def parameters_schema(self) -> Dict[str, Any]:
        """返回 object 类型的 JSON Schema。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = dict(param.schema) if param.schema else {"type": "string"}
            if param.description:
                schema["description"] = param.description
            properties[name] = schema
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """解析工具调用的 arguments 字段。

    OpenAI 系厂商会把 arguments 作为 JSON 字符串返回，这里做一层
    json.loads 尝试，失败时保留原始字符串到 `_raw`，避免信息丢失。
    """

    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {"_raw": raw}
        return value if isinstance(value, dict) else {"_raw": raw}
    return {}
