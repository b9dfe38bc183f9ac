"""LLM providers and the fallback chain used for AI extraction.

Every provider speaks the same capability: take statement content, return
transaction candidates. The orchestrator walks the configured providers in
priority order. A rate-limited provider is retried with exponential
backoff, anything else moves on to the next provider.
"""

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from litellm import acompletion
from litellm.exceptions import RateLimitError
from pydantic import ValidationError

from statement_ingest.config import Settings
from statement_ingest.errors import (
    AllProvidersFailed,
    MalformedOutput,
    NoTransactionsFound,
    ProviderFailed,
    ProviderRateLimited,
    summarize_error,
)
from statement_ingest.models import (
    AccountContext,
    CandidateSource,
    Direction,
    DocumentContext,
    ProviderAttempt,
    ProviderOutcome,
    TaxCategory,
    TransactionCandidate,
)
from statement_ingest.parsers.dates import normalize_date
from statement_ingest.parsers.document_types import ClassificationResult, RawTransaction
from statement_ingest.parsers.json_repair import repair_json
from statement_ingest.parsers.validation import validate_amount
from statement_ingest.services.categorizer import (
    RULE_CONFIDENCE,
    ImportRule,
    categorize,
    parse_import_rules,
    resolve_category,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AI_CONFIDENCE = 0.95
SYSTEM_PROMPT = "You are a helpful assistant that outputs JSON."

_CATEGORY_LIST = ", ".join(category.value for category in TaxCategory)


@dataclass
class ExtractionPayload:
    """Content of one chunk sent to a provider."""

    text: str
    mime_type: str = "text/plain"
    binary: bytes | None = None
    chunk_index: int = 0
    total_chunks: int = 1


@dataclass
class OrchestratorResult:
    """Candidates from a successful run plus the attempt log."""

    transactions: list[TransactionCandidate]
    attempts: list[ProviderAttempt] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def describe_account(account: AccountContext) -> str:
    """User context block shared by the extraction and classification prompts."""
    lines = [f"- Account type: {account.account_type.value}"]
    if account.employment_type:
        lines.append(f"- Employment type: {account.employment_type.value}")
    if account.import_rules:
        lines.append(f"- The user's own categorization rules (apply these first):\n{account.import_rules.strip()}")
    return "\n".join(lines)


def build_extraction_prompt(payload: ExtractionPayload, context: DocumentContext, attached: bool = False) -> str:
    """Instruction contract for statement extraction."""
    part = ""
    if payload.total_chunks > 1:
        part = f" This is part {payload.chunk_index + 1} of {payload.total_chunks}."

    year_hint = ""
    if context.inferred_year:
        year_hint = f"\nDates without a year belong to {context.inferred_year}."

    if attached:
        source = "The statement is attached as a file."
    else:
        source = f"Content:\n{payload.text}"

    return f"""You are a Nigerian tax assistant reading a {context.format.value} bank statement.{part}
Extract EVERY transaction and return ONLY a JSON object of the form
{{"transactions": [{{"date": "...", "description": "...", "amount": 0, "is_income": true, "category": "...", "reasoning": "..."}}]}}

Rules:
- date: ISO 8601 (YYYY-MM-DD). Statement dates are day-first (DD/MM/YYYY).{year_hint}
- description: copy the narration VERBATIM from the statement, do not summarize.
- amount: a positive number without currency symbols or thousands separators.
- is_income: true for money in (credits), false for money out (debits).
- category: exactly one of: {_CATEGORY_LIST}
- reasoning: one short sentence explaining the category.
- Skip opening/closing balances and running balance columns.

User context:
{describe_account(context.account)}

{source}"""


def build_extraction_messages(
    payload: ExtractionPayload, context: DocumentContext, allow_binary: bool = False
) -> list[dict[str, Any]]:
    """Chat messages for one extraction call, attaching the raw file when allowed."""
    attach = allow_binary and payload.binary is not None
    prompt = build_extraction_prompt(payload, context, attached=attach)

    if attach:
        encoded = base64.b64encode(payload.binary).decode("ascii")
        user_content: Any = [
            {"type": "text", "text": prompt},
            {"type": "file", "file": {"file_data": f"data:{payload.mime_type};base64,{encoded}"}},
        ]
    else:
        user_content = prompt

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def build_classification_messages(description: str, is_income: bool, account: AccountContext) -> list[dict[str, Any]]:
    direction = "money received (income)" if is_income else "money spent (expense)"
    prompt = f"""You are a Nigerian tax expert. Categorize this transaction.

Transaction description: "{description}"
Direction: {direction}

User context:
{describe_account(account)}

Choose exactly one category from: {_CATEGORY_LIST}

Return ONLY a JSON object: {{"category": "...", "confidence": 0.0, "reasoning": "..."}}"""

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]


def _extract_json_text(content: str) -> str:
    """Strip markdown fences and any chatter before the first { or [."""
    content = content.strip()

    if "```" in content:
        parts = content.split("```")
        # parts[1] is the fenced block; a lone closing fence leaves JSON in parts[0]
        json_content = parts[1] if any(char in parts[1] for char in "{[") else parts[0]
        # Remove language identifier (e.g., "json\n")
        if json_content.lstrip().startswith("json"):
            json_content = json_content.lstrip()[4:]
        content = json_content.strip()

    starts = [index for index in (content.find("{"), content.find("[")) if index >= 0]
    if starts:
        content = content[min(starts) :]

    return content


def load_provider_json(content: str) -> Any:
    """
    Parse provider output, repairing truncation first.

    Raises:
        MalformedOutput: If the output is not JSON even after repair
    """
    cleaned = _extract_json_text(content or "")
    try:
        return json.loads(repair_json(cleaned))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON from provider: {e}")
        logger.error(f"Content preview: {cleaned[:200]}...")
        raise MalformedOutput(f"Provider returned invalid JSON: {e}") from e


def _to_candidate(
    raw: RawTransaction, context: DocumentContext, overrides: list[ImportRule]
) -> TransactionCandidate | None:
    amount = abs(raw.amount)
    if not validate_amount(amount):
        logger.warning(f"Dropping AI transaction with invalid amount: {raw.amount}")
        return None

    date_result = normalize_date(raw.date, context.inferred_year)
    category, patched = resolve_category(raw.category, raw.description, raw.is_income, overrides)

    if patched:
        source, confidence = CandidateSource.RULE_FALLBACK, RULE_CONFIDENCE
    else:
        source = CandidateSource.AI
        confidence = raw.confidence if raw.confidence is not None else AI_CONFIDENCE

    try:
        return TransactionCandidate(
            date=date_result.value,
            description=raw.description,
            amount=amount,
            direction=Direction.INCOME if raw.is_income else Direction.EXPENSE,
            category=category,
            confidence=confidence,
            source=source,
            reasoning=raw.reasoning,
        )
    except ValidationError as e:
        logger.warning(f"Dropping AI transaction '{raw.description[:40]}': {e.errors()[0]['msg']}")
        return None


def parse_extraction_output(content: str, context: DocumentContext) -> list[TransactionCandidate]:
    """
    Convert raw provider output into candidates.

    Items are validated one by one so a single bad (or truncated) object
    does not cost the whole response.

    Raises:
        MalformedOutput: If the output is not JSON or has no transactions array
    """
    data = load_provider_json(content)
    items = data.get("transactions") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise MalformedOutput("Provider response has no transactions array")

    overrides = parse_import_rules(context.account.import_rules)
    candidates: list[TransactionCandidate] = []

    for index, item in enumerate(items):
        try:
            raw = RawTransaction.model_validate(item)
        except ValidationError as e:
            logger.warning(f"Dropping invalid AI transaction #{index}: {e.errors()[0]['msg']}")
            continue

        candidate = _to_candidate(raw, context, overrides)
        if candidate is not None:
            candidates.append(candidate)

    logger.info(f"Parsed {len(candidates)}/{len(items)} transactions from provider output")
    return candidates


class ExtractionProvider(ABC):
    """A language model that can turn statement content into candidates."""

    name: str = "provider"
    supports_binary: bool = False

    @abstractmethod
    async def complete(self, messages: list[dict[str, Any]]) -> str:
        """Send chat messages, return the raw text reply.

        Raises:
            ProviderRateLimited: On a rate-limit signal
            ProviderFailed: On any other failure
        """

    async def extract(self, payload: ExtractionPayload, context: DocumentContext) -> list[TransactionCandidate]:
        messages = build_extraction_messages(payload, context, allow_binary=self.supports_binary)
        content = await self.complete(messages)
        return parse_extraction_output(content, context)

    async def classify(self, description: str, is_income: bool, account: AccountContext) -> ClassificationResult:
        content = await self.complete(build_classification_messages(description, is_income, account))
        data = load_provider_json(content)
        try:
            return ClassificationResult.model_validate(data)
        except ValidationError as e:
            raise MalformedOutput(f"Invalid classification from {self.name}: {e.errors()[0]['msg']}") from e


class LiteLLMProvider(ExtractionProvider):
    """Provider backed by litellm, so one code path covers every vendor."""

    def __init__(
        self,
        name: str,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 180.0,
        supports_binary: bool = False,
        max_tokens: int = 8192,
    ):
        self.name = name
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.supports_binary = supports_binary
        self.max_tokens = max_tokens

    async def complete(self, messages: list[dict[str, Any]]) -> str:
        logger.debug(f"🔍 [{self.name}] Calling {self.model}")
        try:
            response = await acompletion(
                model=self.model,
                messages=messages,
                api_key=self.api_key or None,
                api_base=self.api_base,
                temperature=0.1,  # Low temperature for consistency
                max_tokens=self.max_tokens,
                timeout=self.timeout,
                response_format={"type": "json_object"},
            )
        except RateLimitError as e:
            raise ProviderRateLimited(f"{self.name} rate limited: {summarize_error(e)}") from e
        except Exception as e:
            raise ProviderFailed(f"{self.name} call failed: {summarize_error(e)}") from e

        content = response.choices[0].message.content
        if not content:
            raise ProviderFailed(f"No content returned from {self.name}")

        logger.debug(f"✅ [{self.name}] Got {len(content)} chars")
        return content


def build_providers(settings: Settings) -> list[ExtractionProvider]:
    """Build the provider chain in configured order, skipping unconfigured ones."""
    providers: list[ExtractionProvider] = []

    for name in settings.ai_provider_order:
        key = name.strip().lower()
        if key == "kimi" and settings.kimi_api_key:
            providers.append(
                LiteLLMProvider(
                    "kimi",
                    settings.kimi_model,
                    api_key=settings.kimi_api_key,
                    api_base="https://api.moonshot.ai/v1",
                    timeout=settings.ai_timeout_seconds,
                )
            )
        elif key == "openai" and settings.openai_api_key:
            providers.append(
                LiteLLMProvider(
                    "openai",
                    settings.openai_model,
                    api_key=settings.openai_api_key,
                    timeout=settings.ai_timeout_seconds,
                )
            )
        elif key == "gemini" and settings.gemini_api_key:
            providers.append(
                LiteLLMProvider(
                    "gemini",
                    settings.gemini_model,
                    api_key=settings.gemini_api_key,
                    timeout=settings.ai_timeout_seconds,
                    supports_binary=True,
                )
            )
        elif key == "ollama":
            providers.append(
                LiteLLMProvider(
                    "ollama",
                    f"ollama/{settings.ollama_model}",
                    api_base=settings.ollama_host,
                    timeout=settings.ai_timeout_seconds,
                )
            )
        elif key in ("kimi", "openai", "gemini"):
            logger.info(f"Skipping {key}: no API key configured")
        else:
            logger.warning(f"Unknown AI provider '{name}' in ai_provider_order")

    return providers


def split_into_chunks(text: str, threshold: int = 12000, chunk_size: int = 6000) -> list[str]:
    """
    Split long content on line boundaries.

    Content at or under the threshold is a single chunk. Lines longer than
    chunk_size are hard-split.
    """
    if len(text) <= threshold:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:chunk_size])
            line = line[chunk_size:]

        if current and len(current) + len(line) + 1 > chunk_size:
            chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line

    if current.strip():
        chunks.append(current)

    return chunks


class ExtractionOrchestrator:
    """Runs a call through the provider chain with retry and fallback."""

    def __init__(
        self,
        providers: list[ExtractionProvider],
        max_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        chunk_threshold: int = 12000,
        chunk_size: int = 6000,
    ):
        self.providers = providers
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.chunk_threshold = chunk_threshold
        self.chunk_size = chunk_size
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionOrchestrator":
        return cls(
            build_providers(settings),
            max_retries=settings.ai_max_retries,
            backoff_base=settings.ai_backoff_base_seconds,
            chunk_threshold=settings.ai_chunk_threshold,
            chunk_size=settings.ai_chunk_size,
        )

    @property
    def available(self) -> bool:
        return bool(self.providers)

    async def run(
        self,
        call: Callable[[ExtractionProvider], Awaitable[T]],
        accept: Callable[[T], bool] = lambda value: True,
        attempts: list[ProviderAttempt] | None = None,
    ) -> tuple[T, str]:
        """
        Try each provider in order until one returns an accepted value.

        Rate limits retry the same provider after base * 2**retry seconds,
        up to max_retries times, then count as a hard failure. Hard failures
        and unaccepted (empty) results move on to the next provider.

        Returns:
            Tuple of (value, name of the provider that produced it)

        Raises:
            AllProvidersFailed: When the chain is exhausted
        """
        attempts = attempts if attempts is not None else []
        last_error: Exception | None = None

        for position, provider in enumerate(self.providers):
            retry = 0
            while True:
                try:
                    value = await call(provider)
                except ProviderRateLimited as e:
                    if retry >= self.max_retries:
                        # Exhausted retry budget escalates to a hard failure
                        exhausted = ProviderFailed(f"{provider.name} rate limited after {retry} retries")
                        exhausted.__cause__ = e
                        last_error = exhausted
                        attempts.append(
                            ProviderAttempt(
                                provider=provider.name,
                                position=position,
                                retry=retry,
                                outcome=ProviderOutcome.FAILED,
                                error=exhausted.message,
                            )
                        )
                        logger.warning(f"⚠️ {exhausted.message}, moving on")
                        break
                    last_error = e
                    attempts.append(
                        ProviderAttempt(
                            provider=provider.name,
                            position=position,
                            retry=retry,
                            outcome=ProviderOutcome.RATE_LIMITED,
                            error=summarize_error(e),
                        )
                    )
                    delay = self.backoff_base * 2**retry
                    retry += 1
                    logger.warning(
                        f"⏳ {provider.name} rate limited, retrying in {delay:.1f}s ({retry}/{self.max_retries})"
                    )
                    await self._sleep(delay)
                    continue
                except Exception as e:
                    last_error = e
                    attempts.append(
                        ProviderAttempt(
                            provider=provider.name,
                            position=position,
                            retry=retry,
                            outcome=ProviderOutcome.FAILED,
                            error=summarize_error(e),
                        )
                    )
                    logger.error(f"❌ {provider.name} failed: {summarize_error(e)}")
                    break

                if not accept(value):
                    last_error = NoTransactionsFound(f"{provider.name} returned no transactions")
                    attempts.append(
                        ProviderAttempt(
                            provider=provider.name,
                            position=position,
                            retry=retry,
                            outcome=ProviderOutcome.FAILED,
                            error=last_error.message,
                        )
                    )
                    logger.warning(f"⚠️ {last_error.message}, trying next provider")
                    break

                attempts.append(
                    ProviderAttempt(
                        provider=provider.name,
                        position=position,
                        retry=retry,
                        outcome=ProviderOutcome.SUCCESS,
                    )
                )
                logger.info(f"✅ {provider.name} succeeded (position {position}, retry {retry})")
                return value, provider.name

        raise AllProvidersFailed(last_error=last_error, attempts=attempts)

    async def extract(self, payload: ExtractionPayload, context: DocumentContext) -> OrchestratorResult:
        """
        Extract one payload through the chain.

        Raises:
            AllProvidersFailed: When no provider produced candidates
        """
        attempts: list[ProviderAttempt] = []
        candidates, provider = await self.run(
            lambda p: p.extract(payload, context),
            accept=bool,
            attempts=attempts,
        )
        return OrchestratorResult(transactions=candidates, attempts=attempts, providers=[provider])

    async def extract_document(
        self,
        text: str,
        context: DocumentContext,
        binary: bytes | None = None,
        mime_type: str = "text/plain",
    ) -> OrchestratorResult:
        """
        Extract a whole document, chunking long content.

        Chunks run one after another. A failed chunk becomes a warning;
        the document only fails when every chunk does.

        Raises:
            AllProvidersFailed: When no chunk produced candidates
        """
        chunks = split_into_chunks(text, self.chunk_threshold, self.chunk_size)
        total = len(chunks)
        if total > 1:
            logger.info(f"📄 Content is {len(text)} chars, processing in {total} chunks")

        combined = OrchestratorResult(transactions=[])
        last_failure: AllProvidersFailed | None = None

        for index, chunk in enumerate(chunks):
            payload = ExtractionPayload(
                text=chunk,
                mime_type=mime_type,
                binary=binary if total == 1 else None,
                chunk_index=index,
                total_chunks=total,
            )
            try:
                result = await self.extract(payload, context)
            except AllProvidersFailed as e:
                last_failure = e
                combined.attempts.extend(e.attempts)
                if total > 1:
                    combined.warnings.append(f"Chunk {index + 1}/{total} failed: {summarize_error(e)}")
                continue

            combined.transactions.extend(result.transactions)
            combined.attempts.extend(result.attempts)
            combined.providers.extend(p for p in result.providers if p not in combined.providers)

        if not combined.transactions:
            raise AllProvidersFailed(
                last_error=last_failure.last_error if last_failure else None,
                attempts=combined.attempts,
            )

        return combined


async def classify_transaction(
    description: str,
    is_income: bool,
    account: AccountContext,
    orchestrator: ExtractionOrchestrator,
) -> ClassificationResult:
    """
    Classify a single transaction through the provider chain.

    Never raises: when no provider answers, the rule categorizer decides
    with confidence 0.
    """
    overrides = parse_import_rules(account.import_rules)
    try:
        result, provider = await orchestrator.run(lambda p: p.classify(description, is_income, account))
    except AllProvidersFailed as e:
        logger.error(f"AI classification failed, using rules: {summarize_error(e)}")
        return ClassificationResult(
            category=categorize(description, is_income, overrides).value,
            confidence=0.0,
            reasoning="Error during AI classification",
        )

    category, patched = resolve_category(result.category, description, is_income, overrides)
    if patched:
        return ClassificationResult(
            category=category.value,
            confidence=RULE_CONFIDENCE,
            reasoning=f"{provider} suggested an unknown category; matched by rules",
        )
    return ClassificationResult(category=category.value, confidence=result.confidence, reasoning=result.reasoning)
