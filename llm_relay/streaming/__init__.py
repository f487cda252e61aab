"""流式多路器：厂商增量 -> 统一、可取消的 ChatStreamDelta 序列。"""

from llm_relay.streaming.multiplexer import ChatStream

__all__ = ["ChatStream"]
