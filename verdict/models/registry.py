"""Adapter registry built from model capability cards."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Type
import logging

from verdict.models.base import ModelAdapter
from verdict.models.client import ProviderClient
from verdict.models.reasoning import ReasoningAdapter
from verdict.models.text import TextAdapter
from verdict.models.vision import VisionAdapter

logger = logging.getLogger(__name__)

ADAPTER_KINDS: Dict[str, Type[ModelAdapter]] = {
    "vision": VisionAdapter,
    "reasoning": ReasoningAdapter,
    "text": TextAdapter,
}


def register_kind(kind: str, adapter_cls: Type[ModelAdapter]) -> None:
    ADAPTER_KINDS[kind] = adapter_cls


def build_adapter(card: Dict[str, Any], client: ProviderClient) -> ModelAdapter:
    kind = str(card.get("kind", ""))
    adapter_cls = ADAPTER_KINDS.get(kind)
    if adapter_cls is None:
        raise ValueError(f"unknown adapter kind '{kind}' for model card {card.get('id')}")
    return adapter_cls(
        client=client,
        model=str(card.get("model") or card.get("id")),
        timeout_seconds=card.get("timeout_seconds"),
        retries=card.get("retries"),
        max_tokens=card.get("max_tokens"),
        allow_lenient_parse=bool(card.get("allow_lenient_parse", False)),
        temperature=float(card.get("temperature", 0.0)),
        options=card.get("options") or {},
    )


@dataclass
class AdapterRegistry:
    adapters: Dict[str, ModelAdapter]
    cards: Dict[str, Dict[str, Any]]

    @classmethod
    def from_config(cls, config: Dict[str, Any], client: ProviderClient) -> "AdapterRegistry":
        adapters: Dict[str, ModelAdapter] = {}
        cards: Dict[str, Dict[str, Any]] = {}
        for card in config.get("cards", []):
            if card.get("enabled", True) is False:
                continue
            try:
                adapter = build_adapter(card, client)
            except ValueError:
                logger.warning("Skipping model card %s", card.get("id"), exc_info=True)
                continue
            adapters[adapter.model] = adapter
            cards[adapter.model] = dict(card)
        return cls(adapters, cards)

    def list_models(self) -> List[Dict[str, Any]]:
        return [
            {
                "model": name,
                "kind": adapter.kind,
                "timeout_seconds": adapter.timeout_seconds,
                "retries": adapter.retries,
                "base_weight": float(self.cards.get(name, {}).get("base_weight", 0.25)),
            }
            for name, adapter in self.adapters.items()
        ]

    def get(self, model: str) -> ModelAdapter | None:
        return self.adapters.get(model)

    def base_weights(self) -> Dict[str, float]:
        return {name: float(card.get("base_weight", 0.25)) for name, card in self.cards.items()}

    def __iter__(self):
        return iter(self.adapters.values())

    def __len__(self) -> int:
        return len(self.adapters)
