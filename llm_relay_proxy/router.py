"""
Model router for chat requests.

Resolves the client-facing model name of a request to the upstream
provider/model binding, falling back to the configured default.
"""

import logging
from typing import Dict, List, Optional, Set

from .models import GatewayConfig, ModelBinding

logger = logging.getLogger(__name__)


class ModelRouter:
    """Resolves client model names to upstream bindings."""

    def __init__(self, config: Optional[GatewayConfig] = None):
        """
        Initialize router.

        Args:
            config: Gateway configuration
        """
        self.config = config or GatewayConfig()
        self.bindings: Dict[str, ModelBinding] = dict(self.config.model_bindings)

        # Diagnostics for models that fell back to the default binding
        self.fallback_count = 0
        self.unknown_models: Set[str] = set()

    def resolve(self, model: str) -> ModelBinding:
        """
        Determine the upstream binding for a model name.

        Unknown names never raise: they resolve to the default binding and
        are recorded for diagnostics.

        Args:
            model: Client-facing model identifier

        Returns:
            Model binding
        """
        binding = self.bindings.get(model)
        if binding is not None:
            logger.debug(
                f"Model {model} → {binding.backend_family}/{binding.backend_model_id}"
            )
            return binding

        default = self.config.default_binding
        self.fallback_count += 1
        self.unknown_models.add(model)

        logger.warning(
            f"Model {model!r} not found in bindings, using default "
            f"{default.backend_family}/{default.backend_model_id}"
        )
        return default

    def is_known(self, model: str) -> bool:
        return model in self.bindings

    def list_models(self) -> List[Dict]:
        """Model catalog in the OpenAI /v1/models shape."""
        return [
            {
                "id": name,
                "object": "model",
                "owned_by": binding.provider.lower(),
                "backend_model": binding.backend_model_id,
            }
            for name, binding in sorted(self.bindings.items())
        ]

    def get_stats(self) -> Dict:
        """Get router statistics."""
        return {
            "bindings": len(self.bindings),
            "fallback_count": self.fallback_count,
            "unknown_models": sorted(self.unknown_models),
        }
