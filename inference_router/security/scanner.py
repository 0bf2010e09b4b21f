"""
Injection scanner: pre-flight check of request content.

Design: pure regex/heuristic matching, no model calls, so the same request
always gets the same verdict and every hit maps to a named signature for
the audit trail. System messages are authored by the caller and are not
scanned; every other turn is.

Verdicts:
  pass   request unchanged
  flag   request copied with security_flags set, routing continues
  block  router raises SecurityError, no provider is contacted
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from inference_router.contracts.models import CompletionRequest, Role
from inference_router.observability.metrics import scanner_verdicts
from inference_router.security.signatures import (
    DEFAULT_SIGNATURE_SET,
    Signature,
    signature_set,
)

logger = logging.getLogger(__name__)

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff\u00ad]")
_WHITESPACE = re.compile(r"\s+")

# Invisible characters hidden between visible ones are a smuggling signal
# on their own, independent of any signature.
_ZERO_WIDTH_FLAG_THRESHOLD = 3


class Verdict(str, Enum):
    PASS = "pass"
    FLAG = "flag"
    BLOCK = "block"


@dataclass
class ScanResult:
    verdict: Verdict
    matches: list[str] = field(default_factory=list)
    signature_set: str = DEFAULT_SIGNATURE_SET

    @property
    def blocked(self) -> bool:
        return self.verdict is Verdict.BLOCK

    @property
    def flags(self) -> tuple[str, ...]:
        return tuple(self.matches)


def normalize(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = _ZERO_WIDTH.sub("", text)
    return _WHITESPACE.sub(" ", text).strip().lower()


class InjectionScanner:
    """
    Scans request content against a versioned signature set.

    mode="monitor" downgrades block verdicts to flags, for rolling out a new
    signature set without rejecting traffic.
    """

    def __init__(
        self,
        signature_set_version: str = DEFAULT_SIGNATURE_SET,
        extra_signatures: Iterable[Signature] = (),
        mode: Literal["enforce", "monitor"] = "enforce",
    ) -> None:
        self.signature_set_version = signature_set_version
        self._signatures = signature_set(signature_set_version) + tuple(extra_signatures)
        self.mode = mode

    @property
    def signatures(self) -> tuple[Signature, ...]:
        return self._signatures

    def scan(self, request: CompletionRequest) -> ScanResult:
        texts = [m.content for m in request.messages if m.role != Role.SYSTEM and m.content]
        return self.scan_texts(texts, correlation_id=request.correlation_id)

    def scan_texts(self, texts: Iterable[str], correlation_id: str | None = None) -> ScanResult:
        matches: list[str] = []
        blocking = False

        for text in texts:
            if len(_ZERO_WIDTH.findall(text)) >= _ZERO_WIDTH_FLAG_THRESHOLD:
                if "hidden_characters" not in matches:
                    matches.append("hidden_characters")
            normalized = normalize(text)
            for sig in self._signatures:
                if sig.id in matches:
                    continue
                if sig.pattern.search(normalized):
                    matches.append(sig.id)
                    blocking = blocking or sig.action == "block"
                    logger.debug("Signature %s matched", sig.id)

        if blocking and self.mode == "enforce":
            verdict = Verdict.BLOCK
        elif matches:
            verdict = Verdict.FLAG
        else:
            verdict = Verdict.PASS

        scanner_verdicts.labels(verdict=verdict.value).inc()
        if verdict is not Verdict.PASS:
            logger.warning(
                "Injection scan %s (%d signature(s))",
                verdict.value.upper(),
                len(matches),
                extra={"_extra": {"correlation_id": correlation_id, "signatures": matches}},
            )
        return ScanResult(
            verdict=verdict,
            matches=matches,
            signature_set=self.signature_set_version,
        )

    def annotate(self, request: CompletionRequest, result: ScanResult) -> CompletionRequest:
        """Return a copy of the request carrying the scan's flags."""
        if not result.matches:
            return request
        flags = tuple(dict.fromkeys(request.security_flags + result.flags))
        return request.model_copy(update={"security_flags": flags})
