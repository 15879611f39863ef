"""
Email finder: name/domain cleaning and MailTester Ninja lookups

Candidate addresses are generated from a cleaned name and domain and checked
one by one against the verification API until one is accepted.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from config import settings
import logging

logger = logging.getLogger(__name__)

NAME_PREFIXES = {
    # Professional titles
    'dr', 'dr.', 'mr', 'mr.', 'mrs', 'mrs.', 'ms', 'ms.', 'miss', 'prof', 'prof.',
    'professor', 'sir', 'madam', 'dame', 'lord', 'lady', 'rev', 'rev.', 'reverend',
    'fr', 'fr.', 'father', 'pastor', 'rabbi', 'imam', 'bishop', 'archbishop',
    # Military ranks
    'gen', 'gen.', 'general', 'col', 'col.', 'colonel', 'maj', 'maj.', 'major',
    'capt', 'capt.', 'captain', 'lt', 'lt.', 'lieutenant', 'sgt', 'sgt.', 'sergeant',
    'cpl', 'cpl.', 'corporal', 'pvt', 'pvt.', 'private', 'admiral', 'commander',
    # Business titles
    'ceo', 'cfo', 'cto', 'coo', 'cmo', 'cio', 'vp', 'evp', 'svp', 'avp', 'president',
    'chairman', 'chairwoman', 'chairperson', 'director', 'manager', 'lead', 'head',
}

NAME_SUFFIXES = {
    # Generational
    'jr', 'jr.', 'sr', 'sr.', 'ii', 'iii', 'iv', 'v', '2nd', '3rd', '4th', '5th',
    # Academic degrees
    'phd', 'ph.d', 'ph.d.', 'md', 'm.d', 'm.d.', 'dds', 'd.d.s', 'dmd', 'do', 'd.o',
    'jd', 'j.d', 'llb', 'll.b', 'llm', 'll.m', 'mba', 'm.b.a', 'ma', 'm.a', 'ms', 'm.s',
    'msc', 'm.sc', 'ba', 'b.a', 'bs', 'b.s', 'bsc', 'b.sc', 'bed', 'b.ed', 'med', 'm.ed',
    'edd', 'ed.d', 'psyd', 'psy.d', 'dba', 'd.b.a', 'dmin', 'd.min', 'thd', 'th.d',
    # Certifications
    'cpa', 'c.p.a', 'cfa', 'c.f.a', 'cfp', 'c.f.p', 'pmp', 'p.m.p', 'rn', 'r.n',
    'lpn', 'l.p.n', 'np', 'n.p', 'pa', 'p.a', 'pe', 'p.e', 'esq', 'esq.',
    'cissp', 'ccna', 'ccnp', 'mcse', 'aws', 'phr', 'sphr', 'shrm-cp', 'shrm-scp',
    # Other
    'ret', 'ret.', 'retired', 'faia', 'aia', 'leed', 'ap', 'asla', 'ase', 'cse',
}

EMOJI_PATTERN = re.compile(r"[\u2600-\u27BF\uE000-\uF8FF]")
BRACKETS_PATTERN = re.compile(r"[\(\[\{<][^)\]}>]*[\)\]}>]")
DOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")

# Verification statuses, best first
ACCEPTED = "accepted"
LIMITED = "limited"
CATCH_ALL = "catch-all"
REJECTED = "rejected"

CONFIDENCE = {ACCEPTED: "high", LIMITED: "medium", CATCH_ALL: "low"}


def _strip_token(word: str) -> str:
    return re.sub(r"[.,]", "", word.lower())


def _is_listed(word: str, words: set) -> bool:
    token = _strip_token(word)
    return token in words or token + "." in words


def clean_full_name(name) -> str:
    """Drop titles, degrees, emoji and bracketed notes; title-case the rest"""
    if not name or not isinstance(name, str):
        return ""

    cleaned = EMOJI_PATTERN.sub("", name.strip())
    cleaned = BRACKETS_PATTERN.sub("", cleaned)

    words = cleaned.split()
    while words and _is_listed(words[0], NAME_PREFIXES):
        words.pop(0)
    while words and _is_listed(words[-1], NAME_SUFFIXES):
        words.pop()

    cleaned = re.sub(r"[^\w\s'-]", " ", " ".join(words), flags=re.ASCII)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return " ".join(w[:1].upper() + w[1:].lower() for w in cleaned.split(" ") if w)


def combine_names(first_name, last_name) -> str:
    first = clean_full_name(first_name)
    last = clean_full_name(last_name)
    if first and last:
        return f"{first} {last}"
    return first or last or ""


def clean_domain(domain) -> str:
    """Bare lower-case host from a URL or domain; empty string when invalid"""
    if not domain or not isinstance(domain, str):
        return ""

    cleaned = domain.strip().lower()
    cleaned = re.sub(r"^https?://", "", cleaned)
    cleaned = re.sub(r"^www\.", "", cleaned)
    cleaned = re.split(r"[/?#]", cleaned, maxsplit=1)[0]
    cleaned = cleaned.split(":")[0]

    if "." not in cleaned or len(cleaned) < 3:
        return ""
    if not DOMAIN_PATTERN.match(cleaned):
        return ""
    return cleaned


def candidate_emails(cleaned_name: str, cleaned_domain: str) -> List[str]:
    """Common address formats in the order they are tried"""
    parts = cleaned_name.lower().split(" ")
    first = parts[0] if parts else ""
    last = parts[-1] if parts else ""
    f, l = first[:1], last[:1]
    candidates = [
        f"{first}.{last}@{cleaned_domain}",
        f"{first}{last}@{cleaned_domain}",
        f"{f}{last}@{cleaned_domain}",
        f"{first}@{cleaned_domain}",
        f"{first}{l}@{cleaned_domain}",
        f"{f}.{last}@{cleaned_domain}",
    ]
    return [e for e in candidates if e and not e.startswith(".") and not e.startswith("@")]


def map_api_status(code_or_message: Optional[str]) -> str:
    lower = (code_or_message or "").lower()
    if lower in ("ok", "accepted") or "accepted" in lower:
        return ACCEPTED
    if "catch" in lower:
        return CATCH_ALL
    if "limited" in lower or "quota" in lower:
        return LIMITED
    if "reject" in lower or lower == "invalid":
        return REJECTED
    if "no mx" in lower or "no_mx" in lower:
        return "no mx"
    if "mx error" in lower or "mx_error" in lower:
        return "mx error"
    if "timeout" in lower:
        return "timeout"
    if "spam" in lower:
        return "spam"
    return REJECTED


@dataclass
class VerificationResult:
    email: str
    status: str
    is_catch_all: bool = False

    def to_dict(self):
        return {"email": self.email, "status": self.status, "isCatchAll": self.is_catch_all}


@dataclass
class EmailLookupResult:
    success: bool
    email: Optional[str] = None
    status: Optional[str] = None
    confidence: Optional[str] = None
    all_tested: List[VerificationResult] = field(default_factory=list)
    error: Optional[str] = None


def select_best_email(results: List[VerificationResult]):
    """(email, status) by priority: accepted, limited, catch-all. (None, None) otherwise."""
    for r in results:
        if r.status == ACCEPTED and not r.is_catch_all:
            return r.email, ACCEPTED
    for r in results:
        if r.status == LIMITED:
            return r.email, LIMITED
    for r in results:
        if r.status == CATCH_ALL or (r.status == ACCEPTED and r.is_catch_all):
            return r.email, CATCH_ALL
    return None, None


def get_confidence(status: Optional[str]) -> str:
    return CONFIDENCE.get(status, "low")


class EmailFinderClient:
    """Async MailTester Ninja client; one GET per candidate address"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limit_ms: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.MAILTESTER_NINJA_API_KEY
        self.base_url = base_url or settings.MAILTESTER_NINJA_URL
        self.rate_limit_ms = settings.EMAIL_RATE_LIMIT_MS if rate_limit_ms is None else rate_limit_ms
        self._http_client = http_client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.EMAIL_REQUEST_TIMEOUT_SECONDS)
        return self._http_client

    async def aclose(self):
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def verify(self, email: str) -> Optional[VerificationResult]:
        """Check one address; None when the API answers with a non-2xx status"""
        response = await self._client().get(self.base_url, params={"email": email, "key": self.api_key})
        if response.status_code >= 400:
            logger.warning(f"[EMAIL] Verification request for {email} returned {response.status_code}")
            return None
        data = response.json()
        code = data.get("code")
        message = data.get("message") or ""
        return VerificationResult(
            email=email,
            status=map_api_status(code or message),
            is_catch_all=code == "catch-all" or "catch" in message.lower(),
        )

    async def find_email(self, name: str, domain: str) -> EmailLookupResult:
        """
        Try candidate formats until one is accepted. Transport errors propagate
        to the caller.
        """
        cleaned_name = clean_full_name(name)
        cleaned_domain = clean_domain(domain)
        if not cleaned_name:
            return EmailLookupResult(success=False, error="Invalid or empty name")
        if not cleaned_domain:
            return EmailLookupResult(success=False, error="Invalid or empty domain")

        results: List[VerificationResult] = []
        for email in candidate_emails(cleaned_name, cleaned_domain):
            result = await self.verify(email)
            if result is None:
                continue
            results.append(result)
            if result.status == ACCEPTED:
                break
            if self.rate_limit_ms:
                await asyncio.sleep(self.rate_limit_ms / 1000)

        email, status = select_best_email(results)
        if email:
            return EmailLookupResult(
                success=True,
                email=email,
                status=status,
                confidence=get_confidence(status),
                all_tested=results,
            )
        return EmailLookupResult(success=False, error="No valid email found", all_tested=results)
