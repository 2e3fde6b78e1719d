import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from groq import AsyncGroq
from google import genai

from ..core.config import settings
from ..schemas.semantic import SemanticQuery, SemanticVerdict
from .response_cache import AIResponseCache, generate_cache_key

logger = logging.getLogger(__name__)


# =============================================================================
# PROMPTS
# =============================================================================

SYSTEM_PROMPTS: Dict[str, str] = {
    "drug": (
        "You are a clinical pharmacology expert. Analyze whether a patient's treatment matches "
        "the clinical trial criterion. Consider drug classes, mechanisms, synonyms, brand/generic "
        "names and related treatments. Also name the pharmacologic class of the patient's drug."
    ),
    "medical condition": (
        "You are a medical expert. Analyze whether a patient's condition matches the clinical "
        "trial criterion. Consider medical synonyms, related conditions, and severity."
    ),
    "severity": (
        "You are a dermatology expert specializing in psoriasis severity assessment. "
        "Analyze whether the patient's severity matches the trial criterion."
    ),
    "infection": (
        "You are an infectious disease expert. Analyze whether the patient's infection "
        "status matches the trial criterion."
    ),
    "default": (
        "You are a clinical trial eligibility expert. Analyze whether patient data matches "
        "the criterion requirement."
    ),
}

MATCH_PROMPT = """Task: Determine if a patient's {context} semantically matches a clinical trial criterion.

Patient's {context}: "{patient_term}"
Trial Criterion: "{criterion_term}"

Instructions:
1. Analyze if these terms are semantically equivalent or if the patient's term falls under the criterion
2. Consider medical synonyms, related conditions, and clinical relationships
3. Provide a confidence score between 0.0 and 1.0:
   - 0.9-1.0: Very strong match (exact synonym or direct relationship)
   - 0.7-0.89: Strong match (closely related or typically associated)
   - 0.5-0.69: Moderate match (potentially related, needs review)
   - 0.3-0.49: Weak match (distantly related)
   - 0.0-0.29: No meaningful match

Respond ONLY with valid JSON in this exact format:
{{
  "match": true/false,
  "confidence": 0.X,
  "reasoning": "Brief explanation of the medical relationship",
  "suggested_class": "drug class if the term is a drug, otherwise null"
}}"""


def build_match_prompt(patient_term: str, criterion_term: str, context: str) -> Tuple[str, str]:
    """Return (system_prompt, user_prompt) for one semantic match."""
    system = SYSTEM_PROMPTS.get((context or "").strip().lower(), SYSTEM_PROMPTS["default"])
    prompt = MATCH_PROMPT.format(context=context, patient_term=patient_term, criterion_term=criterion_term)
    return system, prompt


def parse_semantic_verdict(text: Optional[str]) -> SemanticVerdict:
    """
    Extract the JSON object from a model reply. Anything that does not carry
    a boolean match, a numeric confidence and a string reasoning becomes a
    parse-error verdict.
    """
    try:
        found = re.search(r"\{[\s\S]*\}", text or "")
        if not found:
            raise ValueError("No JSON found in response")
        return SemanticVerdict.from_reply(json.loads(found.group()))
    except ValueError as e:  # json.JSONDecodeError is a ValueError
        logger.warning("Failed to parse semantic verdict: %s", e)
        return SemanticVerdict.failure(f"parse error: {e}")


# =============================================================================
# SERVICE
# =============================================================================

class LLMService:
    """
    Semantic-reasoning collaborator backed by Groq and Google Gemini.
    Fallback order: Groq 1 -> Gemini 1 -> Gemini 2 -> Groq 2 (last resort)
    """

    def __init__(self, cache: Optional[AIResponseCache] = None):
        # List of (client, name, provider) tuples in fallback order
        self.clients: List[Tuple[Any, str, str]] = []
        self.current_index: int = 0
        self.cache = cache or AIResponseCache()

        # 1. Groq primary
        if settings.GROQ_API_KEY:
            client = AsyncGroq(api_key=settings.GROQ_API_KEY)
            self.clients.append((client, "GROQ_API_KEY (primary)", "groq"))

        # 2. Gemini primary
        if settings.GEMINI_API_KEY:
            client = genai.Client(api_key=settings.GEMINI_API_KEY)
            self.clients.append((client, "GEMINI_API_KEY (primary)", "gemini"))

        # 3. Gemini backup
        if settings.GEMINI_API_KEY_2:
            client = genai.Client(api_key=settings.GEMINI_API_KEY_2)
            self.clients.append((client, "GEMINI_API_KEY_2 (backup)", "gemini"))

        # 4. Groq last resort
        if settings.GROQ_API_KEY_2:
            client = AsyncGroq(api_key=settings.GROQ_API_KEY_2)
            self.clients.append((client, "GROQ_API_KEY_2 (last resort)", "groq"))

        logger.info("LLM service initialized with %d providers: %s",
                    len(self.clients), ", ".join(name for _, name, _ in self.clients) or "none")

    @property
    def is_configured(self) -> bool:
        return bool(self.clients)

    def _is_rate_limit_error(self, error: Exception) -> bool:
        error_str = str(error).lower()
        return (
            "429" in error_str or
            "rate limit" in error_str or
            "rate_limit" in error_str or
            "quota" in error_str or
            "resource exhausted" in error_str
        )

    async def _try_groq(
            self,
            client: AsyncGroq,
            messages: List[dict],
            temperature: float,
            max_tokens: int
    ) -> str:
        response = await client.chat.completions.create(
            model=settings.GROQ_MODEL,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens
        )
        return response.choices[0].message.content

    async def _try_gemini(
            self,
            client: genai.Client,
            messages: List[dict],
            temperature: float,
            max_tokens: int
    ) -> str:
        # Gemini takes one prompt string
        prompt_parts = []
        for msg in messages:
            if msg["role"] == "system":
                prompt_parts.append(f"Instructions: {msg['content']}\n\n")
            elif msg["role"] == "user":
                prompt_parts.append(msg["content"])

        response = await client.aio.models.generate_content(
            model=settings.GEMINI_MODEL,
            contents="".join(prompt_parts),
            config={
                "temperature": temperature,
                "max_output_tokens": max_tokens
            }
        )
        return response.text

    async def generate(
            self,
            prompt: str,
            system_prompt: Optional[str] = None,
            temperature: float = 0.7,
            max_tokens: int = 1024
    ) -> str:
        """
        Generate a response from the LLM, falling through the providers in
        order. Raises RuntimeError when none is configured or all fail.
        """
        if not self.clients:
            raise RuntimeError("No LLM service available. Please configure GROQ_API_KEY or GEMINI_API_KEY.")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        last_error = None
        for i in range(len(self.clients)):
            idx = (self.current_index + i) % len(self.clients)
            client, name, provider = self.clients[idx]

            try:
                if provider == "groq":
                    result = await self._try_groq(client, messages, temperature, max_tokens)
                else:  # gemini
                    result = await self._try_gemini(client, messages, temperature, max_tokens)

                # Stick with the provider that worked
                self.current_index = idx
                return result

            except Exception as e:
                last_error = e
                if self._is_rate_limit_error(e):
                    logger.warning("Rate limited on %s, trying next provider", name)
                else:
                    logger.warning("LLM error (%s): %s", name, e)

        raise RuntimeError(f"All LLM providers failed. Last error: {last_error}")

    async def generate_json(
            self,
            prompt: str,
            system_prompt: Optional[str] = None,
            temperature: float = 0.3,
            max_tokens: int = 500
    ) -> str:
        """Lower temperature for more deterministic JSON output."""
        json_system = (system_prompt or "") + "\n\nRespond ONLY with valid JSON. No explanations or markdown."
        return await self.generate(prompt, json_system, temperature, max_tokens)

    # -------------------------------------------------------------------------
    # SEMANTIC MATCHING
    # -------------------------------------------------------------------------

    async def semantic_match(
            self,
            patient_term: str,
            criterion_term: str,
            context: str = "medical term"
    ) -> SemanticVerdict:
        """
        Ask the model whether the patient term matches the criterion term.
        Never raises for transport or parse failures; those come back as
        verdicts with error=True and are not cached.
        """
        key = generate_cache_key(patient_term, criterion_term, context)
        cached = self.cache.get(key)
        if cached is not None:
            return cached.model_copy(update={"from_cache": True})

        system, prompt = build_match_prompt(patient_term, criterion_term, context)
        try:
            text = await self.generate_json(prompt, system)
        except Exception as e:
            logger.warning("Semantic match request failed: %s", e)
            return SemanticVerdict.failure(f"API error: {e}")

        verdict = parse_semantic_verdict(text)
        if not verdict.error:
            self.cache.set(key, verdict)
        return verdict

    async def batch_semantic_match(self, queries: Sequence[SemanticQuery]) -> List[SemanticVerdict]:
        """Run queries concurrently, at most SEMANTIC_BATCH_LIMIT at a time. Order is preserved."""
        limit = max(1, settings.SEMANTIC_BATCH_LIMIT)
        results: List[SemanticVerdict] = []
        for start in range(0, len(queries), limit):
            chunk = queries[start:start + limit]
            results.extend(await asyncio.gather(*(
                self.semantic_match(q.patient_term, q.criterion_term, q.context) for q in chunk
            )))
        return results

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def clear_cache(self) -> None:
        self.cache.clear()


# Singleton instance
llm_service = LLMService()
