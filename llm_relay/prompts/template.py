"""{{variable}} 形式的模板渲染。

- 花括号内允许空白：{{ input }}。
- 引用了未提供的变量时抛 TemplateError。
- 替换进来的值不会被再次扫描，用户输入里出现的 {{...}} 原样保留。
"""

import re
from typing import List, Mapping

from llm_relay.domain.exceptions import TemplateError

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\}")


def template_variables(text: str) -> List[str]:
    """按首次出现顺序返回模板引用的变量名（去重）。"""

    seen: List[str] = []
    for name in PLACEHOLDER.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render_template(text: str, values: Mapping[str, str]) -> str:
    missing = [name for name in template_variables(text) if name not in values]
    if missing:
        raise TemplateError(
            message=f"template references undefined variable(s): {', '.join(missing)}",
            variable=missing[0],
        )
    return PLACEHOLDER.sub(lambda m: str(values[m.group(1)]), text or "")
