"""
Provider Manager - Factory and Registry for Speech Providers

Creates speech providers by id and tracks the active one. The playback
orchestrator never constructs providers itself: it asks the manager, and on
failure asks select_fallback_provider() whether to swap.

Architecture:
    ProviderManager
    ├── Provider Registry (id -> class mapping)
    ├── Per-provider default configuration (synthesizer, sink, URLs)
    └── Active provider tracking

Usage:
    manager = ProviderManager(provider_configs={"local": {"synthesizer": synth}})

    provider = await manager.set_provider("cloud", base_url="http://engine:8766")

    voices = await manager.get_voices()
"""
from typing import Any, Dict, List, Optional, Type
from loguru import logger

from .providers.base_provider import BaseSpeechProvider
from .providers.local_provider import LocalSpeechProvider
from .providers.cloud_provider import CloudSpeechProvider
from .providers.preview_provider import PreviewSpeechProvider
from config import FALLBACK_PROVIDER_ID
from core.provider_exceptions import is_benign_interruption
from models.playback_models import Voice


def select_fallback_provider(current_kind: str, error: Any) -> Optional[str]:
    """
    Decide whether a provider failure should swap to another provider.

    Benign interruptions never swap. A failing local provider has nothing to
    fall back to.

    Args:
        current_kind: Kind of the provider that failed
        error: Exception or raw error payload

    Returns:
        Provider id to swap to, or None to halt and report
    """
    if is_benign_interruption(error):
        return None
    if current_kind == "local":
        return None
    return FALLBACK_PROVIDER_ID


class ProviderManager:
    """
    Speech Provider Manager - Factory and Registry

    Attributes:
        _provider_classes: Registry of provider id -> class mapping
        _provider_configs: Default constructor kwargs per provider id
        _active: Currently active provider instance
    """

    _default_classes: Dict[str, Type[BaseSpeechProvider]] = {
        LocalSpeechProvider.get_provider_id_static(): LocalSpeechProvider,
        CloudSpeechProvider.get_provider_id_static(): CloudSpeechProvider,
        PreviewSpeechProvider.get_provider_id_static(): PreviewSpeechProvider,
    }

    def __init__(self, provider_configs: Optional[Dict[str, Dict[str, Any]]] = None):
        self._provider_classes: Dict[str, Type[BaseSpeechProvider]] = dict(self._default_classes)
        self._provider_configs: Dict[str, Dict[str, Any]] = dict(provider_configs or {})
        self._active: Optional[BaseSpeechProvider] = None

        logger.debug(
            f"[ProviderManager] Initialized with providers: {', '.join(self._provider_classes.keys())}"
        )

    def register_provider(
        self,
        provider_class: Type[BaseSpeechProvider],
        provider_id: Optional[str] = None,
        **default_config
    ) -> None:
        """
        Register (or replace) a provider class.

        Args:
            provider_class: BaseSpeechProvider subclass
            provider_id: Registry key (defaults to the class's provider id)
            **default_config: Constructor kwargs used when none are passed
        """
        key = provider_id or provider_class.get_provider_id_static()
        self._provider_classes[key] = provider_class
        if default_config:
            self._provider_configs[key] = default_config
        logger.debug(f"[ProviderManager] Registered provider '{key}' ({provider_class.__name__})")

    def list_available_providers(self) -> List[str]:
        return list(self._provider_classes.keys())

    def is_known_provider(self, provider_id: str) -> bool:
        return provider_id in self._provider_classes

    def get_provider_info(self) -> List[Dict[str, Any]]:
        """Metadata for every registered provider (no instances created)."""
        return [
            {
                "id": provider_id,
                "displayName": provider_class.get_display_name_static(),
                "kind": provider_class.kind,
                "isTimeAddressable": provider_class.is_time_addressable,
                "isActive": self._active is not None and self._active.provider_id == provider_id,
            }
            for provider_id, provider_class in self._provider_classes.items()
        ]

    def create_provider(self, provider_id: str, **config) -> BaseSpeechProvider:
        """
        Instantiate a provider.

        Explicit config overrides the registered defaults key by key.

        Raises:
            ValueError: If provider_id is unknown
        """
        if provider_id not in self._provider_classes:
            available = ', '.join(self._provider_classes.keys())
            raise ValueError(
                f"Unknown provider: '{provider_id}'. "
                f"Available providers: {available}"
            )

        provider_class = self._provider_classes[provider_id]
        merged = {**self._provider_configs.get(provider_id, {}), **config}
        return provider_class(**merged)

    @property
    def active(self) -> Optional[BaseSpeechProvider]:
        return self._active

    async def set_provider(self, provider_id: str, **config) -> BaseSpeechProvider:
        """
        Create, initialize and activate a provider. The previous one is closed.

        Raises:
            ValueError: If provider_id is unknown
        """
        provider = self.create_provider(provider_id, **config)
        await provider.init()

        old = self._active
        self._active = provider
        if old is not None and old is not provider:
            try:
                await old.close()
            except Exception as e:
                logger.warning(f"[ProviderManager] Closing provider '{old.provider_id}' failed: {e}")

        logger.info(
            f"[ProviderManager] Active provider: "
            f"{old.provider_id if old else None} → {provider.provider_id}"
        )
        return provider

    async def get_voices(self) -> List[Voice]:
        """Voices of the active provider (empty if none)."""
        if self._active is None:
            return []
        return await self._active.get_voices()

    async def close(self) -> None:
        if self._active is not None:
            try:
                await self._active.close()
            except Exception as e:
                logger.warning(f"[ProviderManager] Closing provider failed: {e}")
            self._active = None

    def __repr__(self) -> str:
        active = self._active.provider_id if self._active else None
        return f"<ProviderManager available={len(self._provider_classes)} active={active}>"
