"""
EventSwap Platform - Chat Content Filter
Detects attempts to move a negotiation off-platform (phone numbers, e-mail,
social handles, links, spelled-out digits, tax ids, "pay me directly"
phrases) before the buyer's money is in escrow.

Modes:
  PRE_ESCROW   strict: any detection blocks the message
  POST_ESCROW  passthrough: contact exchange is allowed once funds are held

The rules are a declarative table evaluated in a fixed order; ``analyze``
is a pure reducer over that table. Whitelisted fragments (prices, dates,
times, postal codes, percentages, seat numbers, headcounts) are replaced
with neutral placeholders before matching so they never trip a digit rule.
"""
import enum
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Pattern, Tuple

REDACTED = "[blocked]"


class FilterMode(str, enum.Enum):
    PRE_ESCROW = "PRE_ESCROW"
    POST_ESCROW = "POST_ESCROW"


class Severity(str, enum.Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Violation(str, enum.Enum):
    EMAIL = "email_address"
    EMAIL_OBFUSCATED = "email_obfuscated"
    PHONE = "phone_number"
    MOBILE = "mobile_number"
    PHONE_OBFUSCATED = "phone_obfuscated"
    SOCIAL_HANDLE = "social_handle"
    SOCIAL_REDIRECT = "social_redirect"
    MESSAGING_APP = "messaging_app"
    EXTERNAL_LINK = "external_link"
    SHORT_URL = "short_url"
    WEB_DOMAIN = "web_domain"
    NUMBER_SHARE_INTENT = "number_share_intent"
    SPELLED_NUMBER = "spelled_number"
    OFF_PLATFORM_DEAL = "off_platform_deal"
    OFF_PLATFORM_PAYMENT = "off_platform_payment"
    LEAVE_PLATFORM = "leave_platform"
    TAX_ID = "tax_id"
    LONG_DIGIT_RUN = "long_digit_run"
    SUSPICIOUS_DIGITS = "suspicious_digits"


@dataclass(frozen=True)
class Rule:
    violation: Violation
    pattern: Pattern[str]
    validator: Optional[Callable[[str], bool]] = None

    def is_valid(self, match: str) -> bool:
        return self.validator is None or self.validator(match)


@dataclass
class MessageAnalysis:
    is_blocked: bool
    severity: Severity
    violations: List[Violation] = field(default_factory=list)
    sanitized_text: str = ""


def _rx(pattern: str, ignore_case: bool = False) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE if ignore_case else 0)


# ═══════════════════════════════════════════════════════
#  Whitelist
# ═══════════════════════════════════════════════════════

WHITELIST: Tuple[Tuple[Pattern[str], str], ...] = (
    (_rx(r"R\$\s*[\d.,]+", True), "CURRENCY_AMOUNT"),                      # R$ 1.500,00
    (_rx(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"), "EVENT_DATE"),          # 15/03/2026
    (_rx(r"\b(?:20\d{2}|19\d{2})\b"), "EVENT_YEAR"),
    (_rx(r"\b\d{1,2}h(?:\d{2})?\b", True), "EVENT_TIME"),                  # 18h, 18h30
    (_rx(r"\b\d{1,2}:\d{2}\b"), "EVENT_TIME"),                             # 18:30
    (_rx(r"\b\d{5}-?\d{3}\b"), "POSTAL_CODE"),                             # 01310-100
    (_rx(r"\b\d+[,.]?\d*\s*%"), "PERCENTAGE"),
    (_rx(r"\b(?:lote|ingresso|mesa|lugar|assento|setor|cadeira|fila)\s+\d+\b", True), "SEAT_NUMBER"),
    (_rx(r"\b(?:[1-9]|1\d|20)\s*(?:ingressos?|pessoas?|convidados?|pax)\b", True), "HEADCOUNT"),
)


def strip_whitelisted(text: str) -> str:
    for pattern, placeholder in WHITELIST:
        text = pattern.sub(placeholder, text)
    return text


def is_phone_candidate(match: str) -> bool:
    """8+ digits; a bare run of exactly 11 is left to the tax id rules."""
    digits = sum(ch.isdigit() for ch in match)
    return digits >= 8 and not (digits == 11 and match.isdigit())


def has_tax_id_check_digits(match: str) -> bool:
    """CPF mod-11 check: both verifier digits must match, repeated digits are rejected."""
    digits = [int(ch) for ch in match if ch.isdigit()]
    if len(digits) != 11 or len(set(digits)) == 1:
        return False
    for position in (9, 10):
        total = sum(d * (position + 1 - i) for i, d in enumerate(digits[:position]))
        if (total * 10) % 11 % 10 != digits[position]:
            return False
    return True


def is_long_digit_run(match: str) -> bool:
    return not has_tax_id_check_digits(match)


# ═══════════════════════════════════════════════════════
#  Rule table (evaluation order matters)
# ═══════════════════════════════════════════════════════

_NUMBER_WORD = r"(?:zero|um|uma|dois|duas|tr[eê]s|quatro|cinco|seis|sete|oito|nove)"

RULES: Tuple[Rule, ...] = (
    # ── e-mail ──
    Rule(Violation.EMAIL, _rx(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")),
    Rule(Violation.EMAIL_OBFUSCATED, _rx(
        r"\b\w[\w.\-]*\s*(?:arr[0o]ba|\[?at\]?|\(at\))\s*\w[\w.\-]*?\s*(?:\.|\bponto\b|\bdot\b)\s*"
        r"(?:com|net|org|br|io|co)\b",
        True,
    )),
    # ── links ──
    Rule(Violation.EXTERNAL_LINK, _rx(r"https?://[^\s,;)>]+", True)),
    Rule(Violation.EXTERNAL_LINK, _rx(r"\bwww\.[a-zA-Z0-9\-]+\.[a-zA-Z]{2,}\S*", True)),
    Rule(Violation.SHORT_URL, _rx(
        r"\b(?:bit\.ly|t\.co|goo\.gl|tinyurl\.com|ow\.ly|short\.io|tiny\.cc|rb\.gy)\s*/\s*[a-zA-Z0-9]+",
        True,
    )),
    Rule(Violation.WEB_DOMAIN, _rx(r"\b[a-zA-Z0-9\-]{2,}\.(?:com|net|org|br|io|co|app|me|link)\b", True)),
    # ── social networks / messaging apps ──
    Rule(Violation.SOCIAL_HANDLE, _rx(r"@[a-zA-Z0-9_.]{3,}")),
    Rule(Violation.SOCIAL_HANDLE, _rx(
        r"\b(?:instagram|facebook|fb|twitter|x\.com|linkedin|tiktok|snapchat|telegram|signal)"
        r"\s*[./:]?\s*[a-zA-Z0-9_.]{2,}",
        True,
    )),
    Rule(Violation.SOCIAL_REDIRECT, _rx(
        r"\b(?:me\s+chama|chama\s+no|chama\s+a\s+gente|me\s+add|add\s+no|me\s+segue|me\s+manda|"
        r"manda\s+msg|me\s+contata?|entra\s+em\s+contato)\s*(?:no|na|pelo?|via|pelo?\s+meu)?\s*"
        r"(?:insta(?:gram)?|zap(?:zap)?|whats(?:app)?|face(?:book)?|tele(?:gram)?|signal|linkedin|twitter|tiktok)\b",
        True,
    )),
    Rule(Violation.MESSAGING_APP, _rx(
        r"\b(?:whatsapp|whats\s*app|zap\s*zap|zapzap|telegramm?|signal\s+app)\b", True,
    )),
    # ── spelled-out numbers ──
    Rule(Violation.NUMBER_SHARE_INTENT, _rx(
        r"\b(?:meu|minha)\s+(?:n[uú]mero\s+de\s+(?:cel|celular|telefone|whats|zap)|n[uú]mero|"
        r"celular|cel|fone|telefone|contato)\b",
        True,
    )),
    Rule(Violation.SPELLED_NUMBER, _rx(rf"\b{_NUMBER_WORD}(?:\s+{_NUMBER_WORD}){{4,}}\b", True)),
    Rule(Violation.SPELLED_NUMBER, _rx(rf"\b(?:meu|minha)\s+{_NUMBER_WORD}\b", True)),
    # ── off-platform intent ──
    Rule(Violation.OFF_PLATFORM_DEAL, _rx(
        r"\b(?:fechar?\s+fora|negoci(?:ar?|amos)\s+fora|conversar?\s+fora|falar\s+fora|tratar\s+fora|"
        r"resolver\s+fora|contato\s+fora|direto\s+comigo|direto\s+pelo)\b",
        True,
    )),
    Rule(Violation.OFF_PLATFORM_PAYMENT, _rx(
        r"\b(?:pix\s+direto|transfere\s+direto|manda?\s+pix|passa?\s+o\s+pix|pix\s+pessoal)\b", True,
    )),
    Rule(Violation.LEAVE_PLATFORM, _rx(
        r"\b(?:sai?\s+da\s+plataforma|saindo\s+daqui|v[aã]?\s+no\s+(?:zap|whats|insta|tele)|"
        r"continua?\s+(?:l[aá]|no\s+whats|no\s+zap))\b",
        True,
    )),
    # ── tax id (CPF) ──
    Rule(Violation.TAX_ID, _rx(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b")),
    Rule(Violation.TAX_ID, _rx(r"\b\d{11}\b"), has_tax_id_check_digits),
    Rule(Violation.LONG_DIGIT_RUN, _rx(r"\b\d{11}\b"), is_long_digit_run),
    # ── phone numbers ──
    Rule(Violation.PHONE, _rx(r"(?:\+55[\s\-.]?)?\(?\d{2}\)?[\s\-.]?\d{4,5}[\s\-.]?\d{4}\b"), is_phone_candidate),
    Rule(Violation.PHONE, _rx(r"\b9?\d{4}[\s\-.]\d{4}\b"), is_phone_candidate),  # 99999-8888
    Rule(Violation.MOBILE, _rx(r"\b9\d[\s\-.]?\d{4}[\s\-.]?\d{4}\b"), is_phone_candidate),
    Rule(Violation.PHONE_OBFUSCATED, _rx(r"\b(?:\d[\s.\-_]{1,2}){7,10}\d\b"), is_phone_candidate),
    Rule(Violation.SUSPICIOUS_DIGITS, _rx(r"\b\d{8,11}\b"), is_phone_candidate),
)


# ═══════════════════════════════════════════════════════
#  Severity lattice & explanations
# ═══════════════════════════════════════════════════════

HIGH_SEVERITY = frozenset({
    Violation.EMAIL,
    Violation.EMAIL_OBFUSCATED,
    Violation.PHONE,
    Violation.MOBILE,
    Violation.PHONE_OBFUSCATED,
    Violation.EXTERNAL_LINK,
    Violation.SHORT_URL,
    Violation.SOCIAL_HANDLE,
    Violation.SOCIAL_REDIRECT,
    Violation.MESSAGING_APP,
    Violation.TAX_ID,
})

MEDIUM_SEVERITY = frozenset({
    Violation.SPELLED_NUMBER,
    Violation.NUMBER_SHARE_INTENT,
    Violation.OFF_PLATFORM_DEAL,
    Violation.OFF_PLATFORM_PAYMENT,
    Violation.LEAVE_PLATFORM,
    Violation.SUSPICIOUS_DIGITS,
    Violation.LONG_DIGIT_RUN,
    Violation.WEB_DOMAIN,
})

# email > phone > social > link > bypass intent > spelled-out > tax id > generic digits
EXPLANATION_PRIORITY: Tuple[Tuple[Violation, str], ...] = (
    (Violation.EMAIL, "E-mail addresses are not allowed before payment is confirmed."),
    (Violation.EMAIL_OBFUSCATED, "An attempt to share an e-mail address was detected."),
    (Violation.PHONE, "Phone numbers are not allowed before payment is confirmed."),
    (Violation.MOBILE, "Mobile numbers are not allowed before payment is confirmed."),
    (Violation.PHONE_OBFUSCATED, "An attempt to share a phone number was detected."),
    (Violation.SOCIAL_HANDLE, "Social media profiles are not allowed before payment is confirmed."),
    (Violation.SOCIAL_REDIRECT, "Moving the conversation to social media is not allowed."),
    (Violation.MESSAGING_APP, "External messaging apps are not allowed at this stage."),
    (Violation.EXTERNAL_LINK, "External links are not allowed before payment is confirmed."),
    (Violation.SHORT_URL, "Shortened URLs are not allowed before payment is confirmed."),
    (Violation.WEB_DOMAIN, "Web addresses are not allowed before payment is confirmed."),
    (Violation.OFF_PLATFORM_DEAL, "Negotiations must stay on EventSwap."),
    (Violation.OFF_PLATFORM_PAYMENT, "Payments outside the platform are not allowed."),
    (Violation.LEAVE_PLATFORM, "The conversation must stay on EventSwap."),
    (Violation.SPELLED_NUMBER, "An attempt to share a number written out in words was detected."),
    (Violation.NUMBER_SHARE_INTENT, "Numbers cannot be shared before payment is confirmed."),
    (Violation.TAX_ID, "Do not share your CPF in the chat before payment is confirmed."),
    (Violation.SUSPICIOUS_DIGITS, "A suspicious digit sequence was detected."),
    (Violation.LONG_DIGIT_RUN, "A long digit sequence was detected."),
)


def severity_of(violations: Iterable[Violation]) -> Severity:
    found = set(violations)
    if not found:
        return Severity.NONE
    if found & HIGH_SEVERITY:
        return Severity.HIGH
    if found & MEDIUM_SEVERITY:
        return Severity.MEDIUM
    return Severity.LOW


def describe_violations(violations: Iterable[Violation]) -> str:
    """Single user-facing explanation for the most serious violation."""
    found = set(violations)
    if not found:
        return ""
    for violation, message in EXPLANATION_PRIORITY:
        if violation in found:
            return message
    return "This information is not allowed at this stage of the negotiation."


# ═══════════════════════════════════════════════════════
#  Analysis
# ═══════════════════════════════════════════════════════


def analyze(text: str, mode: FilterMode = FilterMode.PRE_ESCROW) -> MessageAnalysis:
    if mode == FilterMode.POST_ESCROW:
        return MessageAnalysis(
            is_blocked=False,
            severity=Severity.NONE,
            violations=[],
            sanitized_text=text,
        )

    stripped = strip_whitelisted(text)
    sanitized = text
    violations: List[Violation] = []

    for rule in RULES:
        hits = [m.group(0) for m in rule.pattern.finditer(stripped)]
        if not any(rule.is_valid(hit) for hit in hits):
            continue
        if rule.violation not in violations:
            violations.append(rule.violation)
        sanitized = rule.pattern.sub(
            lambda m, rule=rule: REDACTED if rule.is_valid(m.group(0)) else m.group(0),
            sanitized,
        )

    severity = severity_of(violations)
    return MessageAnalysis(
        is_blocked=severity != Severity.NONE,
        severity=severity,
        violations=violations,
        sanitized_text=sanitized,
    )
