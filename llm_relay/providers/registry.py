"""Provider Registry：vendor 名称 -> 已配置的适配器 + 能力描述。

Registry 不含业务逻辑，只负责名称映射与描述信息的登记：

- 注册发生在启动阶段（或显式的重新配置），写操作之间用锁串行，
  每次写入都发布一份新的只读映射（copy-on-write）。
- resolve / descriptor 等读操作只做一次属性读取，不加锁，
  可被任意多个并发请求同时调用。
- 名称不区分大小写。
"""

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import List, Mapping, Optional

from llm_relay.domain.exceptions import DuplicateVendor, UnknownVendor, VendorUnavailable
from llm_relay.domain.models import ProviderDescriptor
from llm_relay.infrastructure.logging.logger import logger
from llm_relay.providers.base import ProviderClient


@dataclass(frozen=True)
class RegistryEntry:
    adapter: ProviderClient
    descriptor: ProviderDescriptor


class ProviderRegistry:
    def __init__(self):
        self._write_lock = threading.Lock()
        self._entries: Mapping[str, RegistryEntry] = MappingProxyType({})

    @staticmethod
    def _key(name: str) -> str:
        return (name or "").strip().lower()

    def register(
        self,
        name: str,
        adapter: ProviderClient,
        descriptor: Optional[ProviderDescriptor] = None,
        overwrite: bool = False,
    ) -> ProviderDescriptor:
        """登记一个适配器；同名已存在且未要求覆盖时抛 DuplicateVendor。"""

        key = self._key(name)
        if not key:
            raise ValueError("vendor name must not be empty")
        if descriptor is None:
            describe = getattr(adapter, "describe", None)
            descriptor = describe() if callable(describe) else ProviderDescriptor(vendor=key)
        with self._write_lock:
            if key in self._entries and not overwrite:
                raise DuplicateVendor(message=f"vendor {name!r} is already registered", vendor=key)
            entries = dict(self._entries)
            entries[key] = RegistryEntry(adapter=adapter, descriptor=descriptor)
            self._entries = MappingProxyType(entries)
        logger.info("Registered vendor", extra={"extra": {"vendor": key, "overwrite": overwrite}})
        return descriptor

    def unregister(self, name: str) -> None:
        key = self._key(name)
        with self._write_lock:
            if key not in self._entries:
                raise UnknownVendor(message=f"unknown vendor: {name!r}", vendor=key)
            entries = dict(self._entries)
            del entries[key]
            self._entries = MappingProxyType(entries)

    def _entry(self, name: str) -> RegistryEntry:
        entry = self._entries.get(self._key(name))
        if entry is None:
            raise UnknownVendor(message=f"unknown vendor: {name!r}", vendor=self._key(name))
        return entry

    def resolve(self, name: str) -> ProviderClient:
        return self._entry(name).adapter

    def descriptor(self, name: str) -> ProviderDescriptor:
        return self._entry(name).descriptor

    def descriptors(self) -> List[ProviderDescriptor]:
        return [e.descriptor for e in self._entries.values()]

    def names(self) -> List[str]:
        return sorted(self._entries)

    def list_models(self, name: str) -> List[str]:
        """向适配器查询模型列表；查询失败只影响本次调用，抛 VendorUnavailable。"""

        adapter = self.resolve(name)
        try:
            return list(adapter.get_models())
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "Model discovery failed",
                extra={"extra": {"vendor": self._key(name), "error": str(e)}},
            )
            raise VendorUnavailable(message=f"cannot list models for {name!r}: {e}", vendor=self._key(name), cause=e) from e

    def close(self) -> None:
        for entry in self._entries.values():
            close = getattr(entry.adapter, "close", None)
            if callable(close):
                close()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._key(name) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
