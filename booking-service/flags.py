import logging
from typing import Optional

import flipt
from flipt.evaluation import EvaluationRequest
from opentelemetry import trace

from config import settings

logger = logging.getLogger(__name__)


class FeatureFlags:
    """Flipt-backed feature switches for search and checkout."""

    def __init__(self, enabled: bool = None):
        self.client = None
        self.tracer = trace.get_tracer(__name__)
        if settings.flipt_enabled if enabled is None else enabled:
            self._initialize_client()

    def _initialize_client(self):
        """Initialize Flipt client."""
        try:
            self.client = flipt.FliptClient(url=settings.flipt_url)
            logger.info(f"Flipt client initialized: {settings.flipt_url}")
        except Exception as e:
            logger.error(f"Failed to initialize Flipt client: {e}")
            self.client = None

    def evaluate_boolean(self, flag_key: str, entity_id: str, context: dict = None, default: bool = False) -> bool:
        """Evaluate a boolean flag."""
        with self.tracer.start_as_current_span("feature_flag.evaluation") as span:
            span.set_attribute("feature_flag.key", flag_key)
            span.set_attribute("feature_flag.type", "boolean")

            if not self.client:
                return default

            try:
                result = self.client.evaluation.boolean(EvaluationRequest(
                    namespace_key=settings.flipt_namespace,
                    flag_key=flag_key,
                    entity_id=entity_id,
                    context=context or {},
                ))
                span.set_attribute("feature_flag.result.variant", str(result.enabled).lower())
                logger.debug(f"Flag '{flag_key}' evaluated to {result.enabled} (reason: {result.reason})")
                return result.enabled
            except Exception as e:
                logger.error(f"Error evaluating boolean flag '{flag_key}': {e}")
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(e))
                return default

    def evaluate_variant(self, flag_key: str, entity_id: str, context: dict = None, default: str = None) -> Optional[str]:
        """Evaluate a variant flag and return the variant key."""
        with self.tracer.start_as_current_span("feature_flag.evaluation") as span:
            span.set_attribute("feature_flag.key", flag_key)
            span.set_attribute("feature_flag.type", "variant")

            if not self.client:
                return default

            try:
                result = self.client.evaluation.variant(EvaluationRequest(
                    namespace_key=settings.flipt_namespace,
                    flag_key=flag_key,
                    entity_id=entity_id,
                    context=context or {},
                ))
                variant_key = result.variant_key or default
                span.set_attribute("feature_flag.result.variant", variant_key or "none")
                logger.debug(f"Flag '{flag_key}' evaluated to variant '{variant_key}' (reason: {result.reason})")
                return variant_key
            except Exception as e:
                logger.error(f"Error evaluating variant flag '{flag_key}': {e}")
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(e))
                return default

    def is_index_fallback_enabled(self, entity_id: str, context: dict = None) -> bool:
        """Whether search may fall back to an unindexed scan when an index is missing."""
        return self.evaluate_boolean(
            flag_key="search-index-fallback",
            entity_id=entity_id,
            context=context,
            default=True,
        )

    def get_checkout_provider(self, entity_id: str, context: dict = None) -> str:
        """Default payment gateway offered at checkout."""
        provider = self.evaluate_variant(
            flag_key="checkout-provider",
            entity_id=entity_id,
            context=context,
            default="flutterwave",
        )
        return provider if provider in ("paystack", "flutterwave") else "flutterwave"


# Global feature flag instance
feature_flags = FeatureFlags()
