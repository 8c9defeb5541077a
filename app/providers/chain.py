"""
Provider fallback chain.

Tries interchangeable providers in order until one returns content that
passes validation. Two retry levels, bounded by one attempt ceiling:

- ContentIncomplete: retry the same provider with its next adjustment
  (e.g. a larger max_tokens, or a "rewrite shorter" prompt)
- any other UpstreamError: move on to the next provider
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from app.cache.errors import (
    ContentIncomplete,
    MalformedResponse,
    UpstreamError,
    most_informative,
)

logger = logging.getLogger("providers.chain")

V = TypeVar("V")

Params = Dict[str, Any]
# (base params, rejected partial output) -> params for the next try
Adjustment = Callable[[Params, Optional[str]], Params]


def with_params(**overrides: Any) -> Adjustment:
    """Adjustment that only overrides parameters, e.g. with_params(max_tokens=950)."""
    def adjust(params: Params, partial: Optional[str]) -> Params:
        return {**params, **overrides}
    return adjust


@dataclass
class Provider:
    """
    One upstream option.

    Args:
        name: Identifier used in logs and attempt records
        call: params -> raw result, raising UpstreamError on failure
        adjustments: Parameter tweaks tried in order on ContentIncomplete
    """
    name: str
    call: Callable[[Params], Any]
    adjustments: Sequence[Adjustment] = ()


@dataclass
class Attempt:
    """Record of one provider call."""
    provider: str
    variant: int  # 0 = base params, n = nth adjustment
    outcome: str  # "success" or an ErrorKind code


@dataclass
class ChainResult(Generic[V]):
    value: V
    provider: str
    attempts: List[Attempt] = field(default_factory=list)


class ProviderFallbackChain:
    """
    Ordered provider attempts with a fixed ceiling.

    On exhaustion the most actionable error is raised (rate limited >
    unavailable > transport > malformed), with `attempts` and `last_error`
    attached so callers can still tell which failure came last.
    ContentIncomplete is reported as MalformedResponse once retries run out.
    """

    def __init__(self, providers: Sequence[Provider], max_attempts: int = 6):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.providers = list(providers)
        self.max_attempts = max_attempts

    def run(
        self,
        params: Params,
        validate: Optional[Callable[[Any], V]] = None,
    ) -> ChainResult:
        """
        Run the chain for one logical request.

        Args:
            params: Base parameters passed to each provider
            validate: Raw result -> accepted value; raises ContentIncomplete
                or MalformedResponse to reject

        Returns:
            ChainResult from the first provider whose output validates

        Raises:
            UpstreamError: when every provider failed or the ceiling was hit
        """
        attempts: List[Attempt] = []
        errors: List[UpstreamError] = []

        for provider in self.providers:
            variants: List[Optional[Adjustment]] = [None, *provider.adjustments]
            partial: Optional[str] = None

            for index, adjust in enumerate(variants):
                if len(attempts) >= self.max_attempts:
                    logger.warning(f"Attempt ceiling ({self.max_attempts}) reached")
                    return self._exhausted(attempts, errors)

                call_params = dict(params) if adjust is None else adjust(dict(params), partial)
                logger.info(f"Trying provider {provider.name} (variant {index})")

                try:
                    raw = provider.call(call_params)
                    value = validate(raw) if validate is not None else raw
                except ContentIncomplete as e:
                    attempts.append(Attempt(provider.name, index, e.code))
                    errors.append(e)
                    if e.partial:
                        partial = e.partial
                    logger.info(f"{provider.name} returned incomplete content, adjusting")
                    continue
                except UpstreamError as e:
                    attempts.append(Attempt(provider.name, index, e.code))
                    errors.append(e)
                    logger.info(f"{provider.name} failed ({e.code}), trying next provider")
                    break

                attempts.append(Attempt(provider.name, index, "success"))
                logger.info(f"Success with provider {provider.name}")
                return ChainResult(value=value, provider=provider.name, attempts=attempts)

        return self._exhausted(attempts, errors)

    def _exhausted(self, attempts: List[Attempt], errors: List[UpstreamError]):
        if not errors:
            err: UpstreamError = MalformedResponse("no_providers_configured")
        else:
            err = most_informative(errors)
            if isinstance(err, ContentIncomplete):
                err = MalformedResponse("content_incomplete_after_retries", details=err.details)

        err.attempts = attempts
        err.last_error = errors[-1] if errors else None
        logger.warning(
            f"All providers failed ({len(attempts)} attempts), reporting {err.code}"
        )
        raise err
