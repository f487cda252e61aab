"""进程内的 echo vendor。

不访问网络，把请求里所有消息的内容按 "\\n" 拼接后原样返回，
用于联调、dry run 之外的端到端冒烟以及测试。
"""

import re
from typing import Iterator, List, Optional

from llm_relay.domain.cancellation import CancelToken
from llm_relay.domain.models import ChatRequest, ChatResponse, ChatStreamDelta, ChatUsage, ProviderDescriptor

_WORDS = re.compile(r"\s*\S+|\s+")


class EchoClient:
    name = "echo"

    def __init__(self, cfg=None):
        self._settings = cfg

    @staticmethod
    def render(req: ChatRequest) -> str:
        return "\n".join(m.content for m in req.messages if m.content)

    def send(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> ChatResponse:
        if cancel is not None:
            cancel.raise_if_cancelled()
        text = self.render(req)
        return ChatResponse(
            text=text,
            finish_reason="stop",
            usage=self._usage(text),
            vendor=self.name,
            model=req.model or "echo",
        )

    def send_stream(self, req: ChatRequest, cancel: Optional[CancelToken] = None) -> Iterator[ChatStreamDelta]:
        text = self.render(req)
        for piece in _WORDS.findall(text):
            if cancel is not None:
                cancel.raise_if_cancelled()
            yield ChatStreamDelta(text=piece)
        yield ChatStreamDelta.final("stop", self._usage(text))

    def get_models(self) -> List[str]:
        return ["echo"]

    def describe(self) -> ProviderDescriptor:
        return ProviderDescriptor(vendor=self.name, models=("echo",), streaming=True)

    def close(self) -> None:
        return None

    @staticmethod
    def _usage(text: str) -> ChatUsage:
        words = len(text.split())
        return ChatUsage(prompt_tokens=words, completion_tokens=words, total_tokens=2 * words)
