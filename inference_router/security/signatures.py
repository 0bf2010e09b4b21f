from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Signature:
    id: str
    pattern: re.Pattern[str]
    action: Literal["flag", "block"] = "flag"
    severity: Severity = Severity.MEDIUM
    description: str = ""


def _sig(
    id: str,
    pattern: str,
    action: Literal["flag", "block"],
    severity: Severity,
    description: str,
) -> Signature:
    return Signature(
        id=id,
        pattern=re.compile(pattern),
        action=action,
        severity=severity,
        description=description,
    )


# Patterns run against normalised text: NFKC, lower-cased, zero-width
# characters removed, whitespace collapsed to single spaces.
_BASE_2024_1: tuple[Signature, ...] = (
    # Instruction override
    _sig(
        "ignore_previous_instructions",
        r"\b(ignore|disregard|forget|override)\b.{0,40}\b(previous|prior|above|earlier|all)\b.{0,40}\b(instructions?|rules|prompts?|directions)\b",
        "block", Severity.CRITICAL,
        "Attempts to cancel the instructions the model was given.",
    ),
    _sig(
        "new_system_prompt",
        r"\b(new|updated|real)\s+(system\s+)?(prompt|instructions)\s*:",
        "block", Severity.HIGH,
        "Injects a replacement system prompt inline.",
    ),
    # Prompt exfiltration
    _sig(
        "reveal_system_prompt",
        r"\b(reveal|print|show|repeat|output|leak)\b.{0,30}\b(system|hidden|initial)\s+(prompt|instructions|message)",
        "block", Severity.HIGH,
        "Asks the model to disclose its hidden prompt.",
    ),
    # Role hijacking
    _sig(
        "role_hijack",
        r"\b(you are now|from now on you are|act as|pretend to be)\b.{0,40}\b(dan|jailbroken|unrestricted|unfiltered|developer mode)\b",
        "block", Severity.CRITICAL,
        "Classic jailbreak persona switch.",
    ),
    _sig(
        "developer_mode",
        r"\b(enable|activate|enter)\s+(developer|god|debug|sudo)\s+mode\b",
        "flag", Severity.MEDIUM,
        "Requests a privileged mode that does not exist.",
    ),
    # Fake transcript / chat-template markers
    _sig(
        "chat_template_markers",
        r"(<\|im_start\|>|<\|im_end\|>|\[inst\]|\[/inst\]|<\|system\|>|<<sys>>)",
        "block", Severity.HIGH,
        "Raw chat-template tokens smuggled in user content.",
    ),
    _sig(
        "fake_role_prefix",
        r"(^|\s)(system|assistant)\s*:\s*(you must|ignore|the user is)",
        "flag", Severity.MEDIUM,
        "Fabricated role-prefixed turn inside a message.",
    ),
    # Guardrail bypass
    _sig(
        "bypass_safety",
        r"\b(bypass|disable|turn off|circumvent)\b.{0,30}\b(safety|guardrails?|filters?|content policy|moderation)\b",
        "flag", Severity.MEDIUM,
        "Asks to disable safety controls.",
    ),
    # Data exfiltration via markup
    _sig(
        "markdown_exfiltration",
        r"!\[[^\]]*\]\(https?://[^)]*\{[^)]*\}[^)]*\)",
        "flag", Severity.HIGH,
        "Markdown image with templated URL, used to leak data.",
    ),
)

_BASE_2025_1: tuple[Signature, ...] = _BASE_2024_1 + (
    _sig(
        "tool_call_injection",
        r"\b(call|invoke|execute|run)\b.{0,20}\b(the\s+)?(tool|function)\b.{0,40}\b(without|do not)\b.{0,20}\b(asking|confirm|telling)",
        "block", Severity.HIGH,
        "Instructs an agent to call tools without user confirmation.",
    ),
    _sig(
        "encoded_payload_instruction",
        r"\b(decode|base64|rot13)\b.{0,40}\b(and|then)\s+(follow|execute|obey|run)\b",
        "flag", Severity.MEDIUM,
        "Hides instructions behind an encoding step.",
    ),
)

SIGNATURE_SETS: dict[str, tuple[Signature, ...]] = {
    "2024.1": _BASE_2024_1,
    "2025.1": _BASE_2025_1,
}

DEFAULT_SIGNATURE_SET = "2025.1"


def signature_set(version: str) -> tuple[Signature, ...]:
    try:
        return SIGNATURE_SETS[version]
    except KeyError:
        raise ValueError(
            f"Unknown signature set '{version}'. "
            f"Available: {', '.join(sorted(SIGNATURE_SETS))}"
        ) from None
