"""
Security judge for the commerce assistant.

Policies run cheapest first and the first failure wins:

    rate limit (input only) -> patterns -> business rules -> semantic

Unsafe verdicts carry a generic fallback message that never explains which
rule fired. Every verdict is recorded on the conversation through a
RECORD_VALIDATION command.

A session whose threat level reaches critical has all input blocked until
``escalation_cooldown_seconds`` pass without a failed validation.
"""

from typing import Dict, Any, List, Optional, Awaitable, Callable, Tuple
from datetime import datetime
import asyncio
import re
import structlog

from commerce_agent.domain.errors import USER_MESSAGES
from commerce_agent.domain.models.action import ActionDefinition
from commerce_agent.domain.models.commands import RecordValidation, SetRateLimit, BaseCommand
from commerce_agent.domain.models.conversation_state import Mode, ThreatLevel
from commerce_agent.domain.models.security import Direction, SecurityContext, SecurityVerdict, Severity
from commerce_agent.domain.security.patterns import (
    INPUT_PATTERNS, SENSITIVE_OUTPUT_PATTERNS, LEAK_PATTERNS, INTERNAL_MARKERS, ZERO_PRICE,
    NEGATIVE_PRICE, DISCOUNT_PERCENT, quantities_in,
)
from commerce_agent.domain.security.rate_limiter import TokenBucketRateLimiter
from commerce_agent.infrastructure.observability.logging import assistant_logger, metrics

logger = structlog.get_logger(__name__)


MAX_TEXT_LENGTH = 5000
GENERIC_FALLBACK = USER_MESSAGES["SecurityViolation"]
RATE_LIMIT_FALLBACK = "You're sending messages faster than I can keep up. Please wait a moment and try again."

INPUT_QUANTITY_CEILINGS = {Mode.B2C: 1000, Mode.B2B: 10000}
DISCOUNT_CEILINGS = {Mode.B2C: 50, Mode.B2B: 40}
SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2, "critical": 3}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"[ \t]+")

ModelJudge = Callable[[str, Direction], Awaitable[bool]]


class SuspicionClassifier:
    """Light lexical scorer deciding whether the model-as-judge is worth consulting"""

    SIGNALS: List[Tuple[re.Pattern, float]] = [
        (re.compile(r"\b(instructions?|prompt|guidelines|rules)\b", re.I), 0.3),
        (re.compile(r"\b(bypass|override|circumvent|disable|unlock)\b", re.I), 0.35),
        (re.compile(r"\b(secret|hidden|internal|backend|debug)\b", re.I), 0.25),
        (re.compile(r"\b(pretend|roleplay|imagine\s+you)\b", re.I), 0.3),
        (re.compile(r"\b(for\s+free|without\s+paying|no\s+charge|free\s+of\s+charge)\b", re.I), 0.3),
        (re.compile(r"\b(everyone|all\s+users|other\s+people)'?s?\b", re.I), 0.2),
        (re.compile(r"[A-Za-z0-9+/]{40,}={0,2}"), 0.35),
    ]

    def score(self, text: str) -> float:
        if not text:
            return 0.0
        total = sum(weight for pattern, weight in self.SIGNALS if pattern.search(text))
        symbols = sum(1 for ch in text if not ch.isalnum() and not ch.isspace())
        if len(text) >= 20 and symbols / len(text) > 0.3:
            total += 0.3
        return min(1.0, round(total, 3))


def model_provider_judge(provider: Any) -> ModelJudge:
    """Use a ModelProvider as the semantic judge; it must answer SAFE or UNSAFE"""

    async def judge(text: str, direction: Direction) -> bool:
        response = await provider.invoke(
            [
                {"role": "system", "content": (
                    "You review messages for an online store assistant. Answer with exactly one word: "
                    "SAFE if the " + direction.value + " is an ordinary shopping message, UNSAFE otherwise."
                )},
                {"role": "user", "content": text},
            ],
            [],
        )
        return response.content.strip().upper().startswith("SAFE")

    return judge


class SecurityJudge:
    """Validates inputs, outputs and action calls"""

    def __init__(
        self,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        classifier: Optional[SuspicionClassifier] = None,
        model_judge: Optional[ModelJudge] = None,
        semantic_threshold: float = 0.6,
        judge_timeout_ms: int = 150,
        escalation_cooldown_seconds: float = 300,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self.classifier = classifier or SuspicionClassifier()
        self.model_judge = model_judge
        self.semantic_threshold = semantic_threshold
        self.judge_timeout_ms = judge_timeout_ms
        self.escalation_cooldown_seconds = escalation_cooldown_seconds
        self._clock = clock

    async def validate_input(self, text: str, context: SecurityContext) -> SecurityVerdict:
        decision = self.rate_limiter.consume(context.bucket_key, context.mode)
        if not decision.allowed:
            verdict = SecurityVerdict(
                safe=False,
                direction=Direction.INPUT,
                reason="Rate limit exceeded",
                fallback_message=RATE_LIMIT_FALLBACK,
                policy="rate_limit",
                category="rate_limit",
                severity=Severity.LOW,
                retry_after_seconds=decision.retry_after_seconds,
                rate_limit_remaining=decision.remaining,
            )
            return self._finish(verdict, context)

        verdict = (
            self._pattern_policy(text, Direction.INPUT)
            or self._input_business_policy(text, context)
            or await self._semantic_policy(text, Direction.INPUT)
            or SecurityVerdict(safe=True, direction=Direction.INPUT, sanitized_input=self.sanitize(text))
        )
        verdict.rate_limit_remaining = decision.remaining
        return self._finish(verdict, context)

    async def validate_output(self, text: str, context: SecurityContext) -> SecurityVerdict:
        verdict = (
            self._pattern_policy(text, Direction.OUTPUT)
            or self._output_business_policy(text, context)
            or await self._semantic_policy(text, Direction.OUTPUT)
            or SecurityVerdict(safe=True, direction=Direction.OUTPUT)
        )
        return self._finish(verdict, context)

    def validate_action(self, definition: ActionDefinition, params: Dict[str, Any], context: SecurityContext) -> SecurityVerdict:
        """Mode applicability, permissions and quantity bounds for one action call"""

        mode = context.mode if context.mode in (Mode.B2C, Mode.B2B) else Mode.B2C
        verdict = None
        if not definition.applies_to(mode):
            verdict = self._unsafe(Direction.ACTION, "business", "business_rule", Severity.MEDIUM,
                                   f"Action '{definition.name}' is not available in {mode.value} mode")
        elif not set(definition.permissions) <= set(context.permissions):
            verdict = self._unsafe(Direction.ACTION, "business", "business_rule", Severity.MEDIUM,
                                   f"Missing permissions for '{definition.name}'")
        else:
            quantity = params.get("quantity")
            ceiling = INPUT_QUANTITY_CEILINGS[mode]
            if isinstance(quantity, int) and quantity > ceiling:
                verdict = self._unsafe(Direction.ACTION, "business", "business_rule", Severity.MEDIUM,
                                       f"Quantity {quantity} exceeds the {mode.value} ceiling of {ceiling}")

        return self._finish(verdict or SecurityVerdict(safe=True, direction=Direction.ACTION), context)

    def filter_output(self, text: str) -> str:
        """Strip leaked internal markers and implausible prices"""

        filtered = text
        for pattern in LEAK_PATTERNS:
            filtered = pattern.sub("", filtered)
        filtered = ZERO_PRICE.sub("[PRICE REMOVED]", filtered)
        filtered = re.sub(r"free\s+forever", "[OFFER REMOVED]", filtered, flags=re.I)
        for pattern in INTERNAL_MARKERS:
            filtered = pattern.sub("[REDACTED]", filtered)
        return filtered.strip()

    @staticmethod
    def sanitize(text: str) -> str:
        cleaned = _CONTROL_CHARS.sub("", text)
        cleaned = "\n".join(_WHITESPACE.sub(" ", line).strip() for line in cleaned.splitlines())
        return cleaned.strip()

    @staticmethod
    def commands_for(verdict: SecurityVerdict) -> List[BaseCommand]:
        commands: List[BaseCommand] = [RecordValidation(record=verdict.to_record())]
        if verdict.rate_limit_remaining is not None:
            commands.append(SetRateLimit(tokens_remaining=round(verdict.rate_limit_remaining, 3)))
        return commands

    def _pattern_policy(self, text: str, direction: Direction) -> Optional[SecurityVerdict]:
        if len(text) > MAX_TEXT_LENGTH:
            return self._unsafe(direction, "pattern", "length", Severity.LOW,
                                f"Text exceeds {MAX_TEXT_LENGTH} characters")

        worst: Optional[Tuple[str, str]] = None
        for category, patterns in INPUT_PATTERNS.items():
            for pattern, severity in patterns:
                if pattern.search(text) and (worst is None or SEVERITY_ORDER[severity] > SEVERITY_ORDER[worst[1]]):
                    worst = (category, severity)

        if direction == Direction.OUTPUT:
            for pattern, kind in SENSITIVE_OUTPUT_PATTERNS:
                if pattern.search(text):
                    return self._unsafe(direction, "pattern", "sensitive_data", Severity.CRITICAL,
                                        f"Sensitive data in output ({kind})")

        if worst is not None:
            return self._unsafe(direction, "pattern", worst[0], Severity(worst[1]),
                                f"Matched {worst[0]} pattern")
        return None

    def _input_business_policy(self, text: str, context: SecurityContext) -> Optional[SecurityVerdict]:
        if context.threat_level == ThreatLevel.CRITICAL and not self._cooled_down(context):
            return self._unsafe(Direction.INPUT, "business", "escalation", Severity.HIGH,
                                "Session threat level is critical")

        # Mode is not known yet when raw input is checked; use the highest ceiling
        ceiling = INPUT_QUANTITY_CEILINGS.get(context.mode, INPUT_QUANTITY_CEILINGS[Mode.B2B])
        for quantity in quantities_in(text):
            if quantity > ceiling:
                return self._unsafe(Direction.INPUT, "business", "business_rule", Severity.MEDIUM,
                                    f"Quantity {quantity} exceeds ceiling {ceiling}")
        return None

    def _cooled_down(self, context: SecurityContext) -> bool:
        if context.last_violation_at is None:
            return False
        quiet = (self._clock() - context.last_violation_at).total_seconds()
        if quiet < self.escalation_cooldown_seconds:
            return False
        logger.info("Escalation cooled down", session_id=context.session_id, quiet_seconds=round(quiet, 1))
        return True

    def _output_business_policy(self, text: str, context: SecurityContext) -> Optional[SecurityVerdict]:
        if NEGATIVE_PRICE.search(text):
            return self._unsafe(Direction.OUTPUT, "business", "price_manipulation", Severity.HIGH,
                                "Negative price in output")

        mode = context.mode if context.mode in (Mode.B2C, Mode.B2B) else Mode.B2C
        ceiling = DISCOUNT_CEILINGS[mode]
        for match in DISCOUNT_PERCENT.finditer(text):
            if int(match.group(1)) > ceiling:
                return self._unsafe(Direction.OUTPUT, "business", "price_manipulation", Severity.MEDIUM,
                                    f"Discount above {ceiling}% in output")
        return None

    async def _semantic_policy(self, text: str, direction: Direction) -> Optional[SecurityVerdict]:
        score = self.classifier.score(text)
        if score < self.semantic_threshold:
            return None

        if self.model_judge is None:
            return SecurityVerdict(
                safe=True, direction=direction, policy="semantic",
                sanitized_input=self.sanitize(text) if direction == Direction.INPUT else None,
                flags=["unreviewed"], reason=f"suspicion score {score}",
            )

        try:
            safe = await asyncio.wait_for(self.model_judge(text, direction), timeout=self.judge_timeout_ms / 1000)
        except Exception as e:
            logger.warning("Model judge unavailable, failing closed", error=str(e) or type(e).__name__)
            return self._unsafe(direction, "semantic", "judge_unavailable", Severity.MEDIUM,
                                "Semantic judge failed")

        if not safe:
            return self._unsafe(direction, "semantic", "other", Severity.HIGH, "Rejected by semantic judge")
        return None

    @staticmethod
    def _unsafe(direction: Direction, policy: str, category: str, severity: Severity, reason: str) -> SecurityVerdict:
        return SecurityVerdict(
            safe=False,
            direction=direction,
            reason=reason,
            fallback_message=GENERIC_FALLBACK,
            policy=policy,
            category=category,
            severity=severity,
        )

    def _finish(self, verdict: SecurityVerdict, context: SecurityContext) -> SecurityVerdict:
        assistant_logger.log_security_verdict(
            session_id=context.session_id,
            direction=verdict.direction.value,
            safe=verdict.safe,
            policy=verdict.policy,
            category=verdict.category,
            severity=verdict.severity.value,
        )
        if not verdict.safe:
            metrics.increment_counter("security.blocked", tags={"direction": verdict.direction.value, "category": verdict.category or ""})
        return verdict
