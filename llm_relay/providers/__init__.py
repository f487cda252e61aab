"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 vendor 名称到适配器的映射 (registry)。
- 提供各厂商的具体实现 (openai_compat、anthropic_client、ollama_client、echo)。
"""

from typing import Optional

import httpx

from llm_relay.config.settings import settings
from llm_relay.domain.exceptions import UnknownVendor
from llm_relay.providers.anthropic_client import AnthropicClient
from llm_relay.providers.base import ProviderClient
from llm_relay.providers.echo import EchoClient
from llm_relay.providers.ollama_client import OllamaClient
from llm_relay.providers.openai_compat import VENDOR_CONFIGS, OpenAICompatibleClient
from llm_relay.providers.registry import ProviderRegistry

BUILTIN_VENDORS = tuple(VENDOR_CONFIGS) + ("anthropic", "ollama", "echo")


def create_provider(name: Optional[str] = None, cfg=None, transport: Optional[httpx.BaseTransport] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 vendor。

    只做构造，不校验凭证；缺失的凭证在第一次调用时以 AuthError 暴露。
    """

    cfg = cfg or settings
    vendor = (name or getattr(cfg, "default_vendor", "openai")).lower()
    if vendor in VENDOR_CONFIGS:
        return OpenAICompatibleClient(cfg, VENDOR_CONFIGS[vendor], transport=transport)
    if vendor == "anthropic":
        return AnthropicClient(cfg, transport=transport)
    if vendor == "ollama":
        return OllamaClient(cfg, transport=transport)
    if vendor == "echo":
        return EchoClient(cfg)
    raise UnknownVendor(message=f"unknown vendor: {vendor!r}", vendor=vendor)


def build_registry(cfg=None) -> ProviderRegistry:
    """启动时构造默认 Registry，登记全部内置 vendor。"""

    registry = ProviderRegistry()
    for vendor in BUILTIN_VENDORS:
        registry.register(vendor, create_provider(vendor, cfg))
    return registry


__all__ = ["BUILTIN_VENDORS", "ProviderClient", "ProviderRegistry", "build_registry", "create_provider"]
