"""Prompt 组装流水线。

把 pattern、strategy、历史上下文与调用方输入组装成 ChatRequest，
与最终由哪个 vendor 执行无关。纯函数：不访问网络或存储，相同输入得到相同输出。

消息顺序固定：
1. system：pattern.system 渲染结果 + strategy.prefix（直接追加在同一条 system 消息末尾）。
2. 历史上下文消息，保持原有顺序。
3. user：pattern.user 渲染结果（无 user 模板时为原始输入）+ strategy.suffix。

pattern 与 strategy 中重复的指令文本不做去重，按上述顺序直接拼接。
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from llm_relay.domain.models import (
    Attachment,
    ChatMessage,
    ChatOptions,
    ChatRequest,
    Pattern,
    Strategy,
)
from llm_relay.prompts.template import render_template

ContextItem = Union[ChatMessage, Mapping[str, Any]]


def _to_message(item: ContextItem) -> ChatMessage:
    # 上下文存储给出的是 {role, content|text}，这里统一成 ChatMessage
    if isinstance(item, ChatMessage):
        return item
    content = item.get("content")
    if content is None:
        content = item.get("text", "")
    return ChatMessage(role=item["role"], content=content)


def assemble(
    pattern: Optional[Pattern],
    strategy: Optional[Strategy],
    context: Iterable[ContextItem],
    input: str,
    options: Optional[ChatOptions] = None,
    model: str = "",
    variables: Optional[Mapping[str, str]] = None,
    attachments: Sequence[Attachment] = (),
) -> ChatRequest:
    """组装一次请求。

    Args:
        pattern: 已加载的 pattern；为 None 时只发送原始输入。
        strategy: 已加载的推理策略，可选。
        context: 历史会话/上下文消息，按原顺序插入在最终 user 消息之前。
        input: 调用方原始输入，渲染时作为 {{input}} 变量。
        options: 生成参数。
        model: 目标模型，可留空由 Dispatcher 指定。
        variables: 模板中其他 {{变量}} 的取值。
        attachments: 附加到最终 user 消息上的图片/音频。

    Raises:
        TemplateError: 模板引用了未提供的变量。
    """

    values = dict(variables or {})
    values["input"] = input

    system = render_template(pattern.system, values) if pattern and pattern.system else ""
    if strategy and strategy.prefix:
        system += strategy.prefix

    messages: List[ChatMessage] = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.extend(_to_message(item) for item in context)

    if pattern is not None and pattern.user is not None:
        user = render_template(pattern.user, values)
    else:
        user = input
    if strategy and strategy.suffix:
        user += strategy.suffix
    if user or attachments:
        messages.append(ChatMessage(role="user", content=user, attachments=tuple(attachments)))

    return ChatRequest(messages=tuple(messages), model=model, options=options or ChatOptions())


def render_dry_run(request: ChatRequest) -> str:
    """把组装结果渲染成可读文本，供外部 --dry-run 类校验直接打印。"""

    opts = request.options
    lines = ["Dry run:"]
    if request.model:
        lines.append(f"Model: {request.model}")
    option_parts = [
        f"{name}={value}"
        for name, value in (
            ("temperature", opts.temperature),
            ("top_p", opts.top_p),
            ("max_tokens", opts.max_tokens),
            ("seed", opts.seed),
            ("presence_penalty", opts.presence_penalty),
            ("frequency_penalty", opts.frequency_penalty),
        )
        if value is not None
    ]
    option_parts.append(f"stream={opts.stream}")
    lines.append("Options: " + ", ".join(option_parts))
    lines.append("")
    for msg in request.messages:
        lines.append(f"{msg.role.capitalize()}:")
        lines.append(msg.content)
        for att in msg.attachments:
            lines.append(f"[{att.kind}: {att.url or att.mime_type or 'inline data'}]")
        lines.append("")
    return "\n".join(lines).rstrip("\n") + "\n"
