"""
Metered OpenAI client wrapper.

Records a usage event for every successful chat completion without
modifying the call or its response.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.pricing import TokenUsage, calculate_cost
from ..core.timeutil import format_utc, utc_now
from ..storage.base import UsageStorage
from ..storage.models import IngestionResult, UsageRecord

logger = logging.getLogger(__name__)

PRICED_COST_MODEL = "pricing_table"
UNPRICED_COST_MODEL = "unpriced"


class MeteredOpenAI:
    """OpenAI client wrapper that reports usage to a token meter store.

    API failures propagate and nothing is recorded for them. Storage
    failures also propagate so no usage is silently lost.
    """

    def __init__(
        self,
        model: str,
        client_id: str,
        storage: UsageStorage,
        service: str = "openai",
        application: Optional[str] = None,
        environment: Optional[str] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            model: OpenAI model name (required)
            client_id: Identity the usage is stored under (required)
            storage: Initialized usage storage
            service: Service label recorded on each event
            application: Optional application label
            environment: Optional environment label

        Raises:
            ValueError: If model or client_id is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not client_id or not client_id.strip():
            raise ValueError("client_id is required and cannot be empty")

        self.model = model
        self.client_id = client_id
        self.storage = storage
        self.service = service
        self.application = application
        self.environment = environment
        self.client = OpenAI()
        self.last_result: Optional[IngestionResult] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and record its usage.

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        record = self._build_record(
            TokenUsage(input_tokens=usage.prompt_tokens, output_tokens=usage.completion_tokens),
            total_tokens=usage.total_tokens,
            request_id=response.id,
        )
        self.last_result = self.storage.store_usage_records(self.client_id, [record])
        return response

    def _build_record(self, usage: TokenUsage, total_tokens: int, request_id: str) -> UsageRecord:
        try:
            cost_usd: Optional[float] = calculate_cost(self.model, usage)
            cost_model = PRICED_COST_MODEL
        except ValueError:
            logger.warning("No pricing for model %s; recording usage without cost", self.model)
            cost_usd = None
            cost_model = UNPRICED_COST_MODEL

        return UsageRecord(
            timestamp=format_utc(utc_now()),
            service=self.service,
            model=self.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=total_tokens,
            cost_usd=cost_usd,
            cost_model=cost_model,
            request_id=request_id,
            application=self.application,
            environment=self.environment,
        )
