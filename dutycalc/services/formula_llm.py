"""
AI fallback for formula extraction using OpenAI.

Only rate texts the pattern library cannot read are sent here. The model
must answer with a strict JSON object:

    {"formula": "...", "variables": [...], "confidence": 0.0-1.0, "explanation": "..."}

The contract is enforced with pydantic. confidence is required and is
passed on exactly as returned; 0 is a legitimate answer meaning "I could
not read this", not a missing value.
"""

import json
import logging
from typing import List, Optional

import openai
from pydantic import BaseModel, Field, ValidationError

from dutycalc.config import setting
from dutycalc.errors import ExternalServiceError

logger = logging.getLogger(__name__)


FORMULA_PROMPT = """You convert U.S. Harmonized Tariff Schedule duty rate text into an arithmetic formula.

RATE TEXT: "{rate_text}"
UNIT OF QUANTITY: {unit}

Available variables:
- value: declared customs value in USD
- weight: net weight in kilograms
- quantity: number of units (in the unit of quantity above)

Rules:
- Use only numbers, the variables above, + - * / and parentheses.
- Percentages become fractions: "5%" -> value * 0.05
- Cents become dollars: "2.5 cents/kg" -> weight * 0.025
- If the text cannot be turned into a formula, return formula "0" with confidence 0.

Respond with ONLY a JSON object:
{{
  "formula": "value * 0.05",
  "variables": ["value"],
  "confidence": 0.95,
  "explanation": "5% ad valorem"
}}
"""


class FormulaProposal(BaseModel):
    """Response contract of the AI collaborator."""
    formula: str = Field(..., min_length=1)
    variables: List[str] = Field(default_factory=list)
    # strict: a boolean or numeric string is a contract violation, not a number
    confidence: float = Field(..., ge=0.0, le=1.0, strict=True)
    explanation: str = ""


class FormulaLLM:
    """
    OpenAI-backed formula proposer.

    Calls are bounded by a client-level timeout and are not retried;
    any failure surfaces as ExternalServiceError.

    Usage:
        llm = FormulaLLM()
        proposal = llm.propose("3.9% on the value of the case")
        proposal.confidence  # exactly as the model reported it
    """

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.model = model or setting("FORMULA_MODEL")
        self.api_key = api_key or setting("OPENAI_API_KEY")
        self.timeout = timeout if timeout is not None else setting("FORMULA_AI_TIMEOUT_SECONDS")
        self._client = None

    @property
    def client(self):
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ExternalServiceError("OPENAI_API_KEY environment variable is not set")
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def propose(self, rate_text: str, unit_of_quantity: Optional[str] = None) -> FormulaProposal:
        prompt = FORMULA_PROMPT.format(rate_text=rate_text, unit=unit_of_quantity or "unknown")

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
                temperature=0.1,
            )
        except openai.APITimeoutError as e:
            logger.error(f"Formula AI timed out after {self.timeout}s for '{rate_text}'")
            raise ExternalServiceError(f"AI formula extraction timed out: {e}")
        except openai.OpenAIError as e:
            logger.error(f"Formula AI request failed for '{rate_text}': {e}")
            raise ExternalServiceError(f"AI formula extraction failed: {e}")

        raw = response.choices[0].message.content
        return self._parse_response(raw)

    def _parse_response(self, raw: Optional[str]) -> FormulaProposal:
        if not raw:
            raise ExternalServiceError("AI formula extraction returned an empty response")
        try:
            data = json.loads(raw)
            proposal = FormulaProposal.model_validate(data)
        except json.JSONDecodeError as e:
            raise ExternalServiceError(f"AI response is not valid JSON: {e}")
        except ValidationError as e:
            raise ExternalServiceError(f"AI response violates the formula contract: {e.errors()}")

        logger.info(
            f"AI proposed formula '{proposal.formula}' "
            f"(confidence={proposal.confidence:.2f})"
        )
        return proposal
