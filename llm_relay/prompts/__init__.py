"""Prompt 组装：pattern / strategy / 上下文 / 输入 -> ChatRequest。

pattern 与 strategy 文本由外部存储加载后传入，这里不读取任何文件。
"""

from llm_relay.prompts.assembly import assemble, render_dry_run
from llm_relay.prompts.template import render_template, template_variables

__all__ = ["assemble", "render_dry_run", "render_template", "template_variables"]
