"""
Data classification for routing eligibility.

classify() is a pure function of request content and caller metadata, so
the same input always yields the same tag and routing decisions can be
replayed from the audit log. Anything the classifier cannot interpret
(unknown caller labels, binary-looking text, a failed remote lookup) is
treated as the most restrictive tag.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import httpx

from inference_router.contracts.models import CompletionRequest, DataClassification

logger = logging.getLogger(__name__)

METADATA_LABEL_KEY = "data_classification"

_NON_PRINTABLE_RATIO = 0.3


@dataclass(frozen=True)
class Detector:
    name: str
    pattern: re.Pattern[str]
    level: DataClassification


DETECTORS: tuple[Detector, ...] = (
    # Regulated: health and payment data
    Detector("us_ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), DataClassification.REGULATED),
    Detector(
        "medical_record",
        re.compile(r"(?i)\b(mrn|medical record( number)?|patient id)\b\s*[:#]?\s*\w+"),
        DataClassification.REGULATED,
    ),
    Detector(
        "clinical_terms",
        re.compile(r"(?i)\b(diagnos(is|ed)|prescri(bed|ption)|icd-?10|hipaa|phi)\b"),
        DataClassification.REGULATED,
    ),
    # PII
    Detector(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        DataClassification.PII,
    ),
    Detector(
        "phone",
        re.compile(r"(?<!\w)(\+\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b"),
        DataClassification.PII,
    ),
    Detector(
        "iban",
        re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){3,7}\b"),
        DataClassification.PII,
    ),
    Detector(
        "date_of_birth",
        re.compile(r"(?i)\b(date of birth|dob)\b\s*[:#]?\s*\d"),
        DataClassification.PII,
    ),
    # Confidential business content and credentials
    Detector(
        "confidential_marker",
        re.compile(r"(?i)\b(confidential|internal only|proprietary|do not distribute|trade secret)\b"),
        DataClassification.CONFIDENTIAL,
    ),
    Detector(
        "credential",
        re.compile(r"(?i)\b(api[_-]?key|secret|password|token)\b\s*[:=]\s*\S{8,}|\bsk-[A-Za-z0-9]{16,}"),
        DataClassification.CONFIDENTIAL,
    ),
)

_CARD_CANDIDATE = re.compile(r"\b(?:\d[ -]?){13,19}\b")


def luhn_valid(number: str) -> bool:
    digits = [int(c) for c in number if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def _looks_binary(text: str) -> bool:
    if not text:
        return False
    unprintable = sum(1 for c in text if not c.isprintable() and c not in "\n\r\t")
    return unprintable / len(text) > _NON_PRINTABLE_RATIO


class DataClassifier:

    def __init__(
        self,
        detectors: Iterable[Detector] = DETECTORS,
        default: DataClassification = DataClassification.PUBLIC,
        remote: RemoteClassifier | None = None,
    ) -> None:
        self._detectors = tuple(detectors)
        self._default = default
        self._remote = remote

    def classify(self, request: CompletionRequest) -> DataClassification:
        detected = self._classify_text(request.text(), request.metadata)
        if request.classification is not None:
            # Caller overrides can raise the tag, never lower it.
            return DataClassification.strictest(detected, request.classification)
        return detected

    def classify_texts(
        self, texts: Iterable[str], metadata: Mapping[str, str] | None = None
    ) -> DataClassification:
        return self._classify_text("\n".join(texts), metadata or {})

    async def aclassify(self, request: CompletionRequest) -> DataClassification:
        """classify() combined with the optional remote service."""
        local = self.classify(request)
        if self._remote is None or local is DataClassification.most_restrictive():
            return local
        remote = await self._remote.classify(request.text(), request.correlation_id)
        return DataClassification.strictest(local, remote)

    async def aclose(self) -> None:
        if self._remote is not None:
            await self._remote.aclose()

    def _classify_text(self, text: str, metadata: Mapping[str, str]) -> DataClassification:
        level = self._default

        label = metadata.get(METADATA_LABEL_KEY)
        if label is not None:
            try:
                level = DataClassification.strictest(level, DataClassification(label.lower()))
            except ValueError:
                logger.warning("Unknown classification label %r; failing closed", label)
                return DataClassification.most_restrictive()

        if _looks_binary(text):
            return DataClassification.most_restrictive()

        for detector in self._detectors:
            if detector.level.rank <= level.rank:
                continue
            if detector.pattern.search(text):
                level = detector.level

        if level.rank < DataClassification.REGULATED.rank:
            for candidate in _CARD_CANDIDATE.finditer(text):
                if luhn_valid(candidate.group()):
                    level = DataClassification.REGULATED
                    break
        return level


class RemoteClassifier:
    """
    Client for an external classification service.

    POST {base_url}/classify {"text": ...} -> {"classification": "<tag>"}.
    Any failure (network, status, unknown tag) resolves to the most
    restrictive classification.
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)

    async def classify(self, text: str, correlation_id: str | None = None) -> DataClassification:
        try:
            r = await self._client.post(
                "/classify",
                json={"text": text},
                headers={"X-Correlation-ID": correlation_id or ""},
            )
            r.raise_for_status()
            return DataClassification(r.json()["classification"])
        except (httpx.HTTPError, KeyError, ValueError):
            logger.warning(
                "Remote classification failed; failing closed",
                extra={"_extra": {"correlation_id": correlation_id}},
                exc_info=True,
            )
            return DataClassification.most_restrictive()

    async def aclose(self) -> None:
        await self._client.aclose()
