"""Tests for data classification."""

from __future__ import annotations

import httpx
import pytest

from inference_router.contracts.models import DataClassification
from inference_router.security.classifier import DataClassifier, RemoteClassifier, luhn_valid


@pytest.fixture
def classifier():
    return DataClassifier()


def _remote(handler) -> RemoteClassifier:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://classifier.test"
    )
    return RemoteClassifier("http://classifier.test", client=client)


class TestLocalDetectors:

    def test_plain_text_is_public(self, classifier, make_request):
        assert classifier.classify(make_request()) is DataClassification.PUBLIC

    def test_email_is_pii(self, classifier, make_request):
        request = make_request("Forward the invoice to jane.doe@example.com today.")
        assert classifier.classify(request) is DataClassification.PII

    def test_ssn_is_regulated(self, classifier, make_request):
        request = make_request("Customer SSN is 123-45-6789, update the record.")
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_confidential_marker(self, classifier, make_request):
        request = make_request("This memo is confidential, summarise it.")
        assert classifier.classify(request) is DataClassification.CONFIDENTIAL

    def test_card_number_passing_luhn_is_regulated(self, classifier, make_request):
        request = make_request("Charge card 4111 1111 1111 1111 for the renewal.")
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_strictest_detector_wins(self, classifier, make_request):
        request = make_request("Email jane@example.com, SSN 123-45-6789.")
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_deterministic(self, classifier, make_request):
        request = make_request("Reach me at +1 415 555 0100 tomorrow.")
        assert classifier.classify(request) == classifier.classify(request)


class TestLabelsAndOverrides:

    def test_override_escalates(self, classifier, make_request):
        request = make_request(classification=DataClassification.REGULATED)
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_override_cannot_lower_detected_level(self, classifier, make_request):
        request = make_request(
            "Forward the invoice to jane.doe@example.com today.",
            classification=DataClassification.PUBLIC,
        )
        assert classifier.classify(request) is DataClassification.PII

    def test_metadata_label(self, classifier, make_request):
        request = make_request(metadata={"data_classification": "internal"})
        assert classifier.classify(request) is DataClassification.INTERNAL

    def test_unknown_label_fails_closed(self, classifier, make_request):
        request = make_request(metadata={"data_classification": "top-secret"})
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_binary_text_fails_closed(self, classifier, make_request):
        request = make_request("\x00\x01\x02\x03abc")
        assert classifier.classify(request) is DataClassification.REGULATED

    def test_classify_texts(self, classifier):
        level = classifier.classify_texts(["hello world", "mail bob@example.org"])
        assert level is DataClassification.PII
        assert classifier.classify_texts(["hello"]) is DataClassification.PUBLIC


class TestLuhn:

    def test_valid_numbers(self):
        assert luhn_valid("4111111111111111")
        assert luhn_valid("4111-1111-1111-1111")

    def test_invalid_numbers(self):
        assert not luhn_valid("4111111111111112")
        assert not luhn_valid("12345")


class TestRemoteClassifier:

    @pytest.mark.asyncio
    async def test_remote_tag_returned(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/classify"
            return httpx.Response(200, json={"classification": "pii"})

        remote = _remote(handler)
        assert await remote.classify("some text", "cid-1") is DataClassification.PII
        await remote.aclose()

    @pytest.mark.asyncio
    async def test_server_error_fails_closed(self):
        remote = _remote(lambda request: httpx.Response(500))
        assert await remote.classify("some text") is DataClassification.REGULATED
        await remote.aclose()

    @pytest.mark.asyncio
    async def test_unknown_tag_fails_closed(self):
        remote = _remote(lambda request: httpx.Response(200, json={"classification": "secret"}))
        assert await remote.classify("some text") is DataClassification.REGULATED
        await remote.aclose()

    @pytest.mark.asyncio
    async def test_aclassify_combines_local_and_remote(self, make_request):
        remote = _remote(lambda request: httpx.Response(200, json={"classification": "confidential"}))
        classifier = DataClassifier(remote=remote)
        assert await classifier.aclassify(make_request()) is DataClassification.CONFIDENTIAL
        await classifier.aclose()

    @pytest.mark.asyncio
    async def test_remote_cannot_lower_local(self, make_request):
        remote = _remote(lambda request: httpx.Response(200, json={"classification": "public"}))
        classifier = DataClassifier(remote=remote)
        request = make_request("Forward the invoice to jane.doe@example.com today.")
        assert await classifier.aclassify(request) is DataClassification.PII
        await classifier.aclose()

    @pytest.mark.asyncio
    async def test_remote_skipped_when_already_most_restrictive(self, make_request):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"classification": "public"})

        classifier = DataClassifier(remote=_remote(handler))
        request = make_request("Customer SSN is 123-45-6789.")
        assert await classifier.aclassify(request) is DataClassification.REGULATED
        assert calls == []
        await classifier.aclose()
