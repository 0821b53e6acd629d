"""
Suspicion scoring for anonymous auth endpoints.

Real browsers calling login/signup/refresh from the app send a
predictable set of headers. Each missing or odd header adds to a score;
the checks are independent, so degrading any one header can only raise
the score.

    score >= bot threshold        likely bot (rejected or throttled hard)
    score >= suspicious threshold stricter rate limit
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_BOT_THRESHOLD = 200

# Score weights
MISSING_SEC_FETCH_SITE = 50
CROSS_SITE_SEC_FETCH_SITE = 30
MISSING_SEC_FETCH_MODE = 25
UNEXPECTED_SEC_FETCH_MODE = 15
MISSING_SEC_FETCH_DEST = 25
UNEXPECTED_SEC_FETCH_DEST = 15
MISSING_ORIGIN = 50
MISMATCHED_ORIGIN = 75
MISSING_REFERER = 30
MISMATCHED_REFERER = 40
MISSING_USER_AGENT = 100
AUTOMATION_USER_AGENT = 150
MISSING_ACCEPT_LANGUAGE = 40
MISSING_ACCEPT_ENCODING = 30
UNEXPECTED_CONTENT_TYPE = 50

# Lowercase substrings of known automation / headless user agents
AUTOMATION_SIGNATURES = (
    "headless",
    "phantomjs",
    "selenium",
    "webdriver",
    "puppeteer",
    "playwright",
    "curl/",
    "wget/",
    "python-requests",
    "python-urllib",
    "python-httpx",
    "aiohttp",
    "go-http-client",
    "java/",
    "okhttp",
    "axios/",
    "node-fetch",
    "postmanruntime",
    "insomnia",
    "scrapy",
    "httpclient",
    "libwww-perl",
)

_SAME_SITE = {"same-origin", "same-site"}
_FETCH_MODES = {"cors", "same-origin"}


@dataclass(frozen=True)
class SuspicionReport:
    """Score for one request and why."""

    score: int
    reasons: tuple[str, ...]
    is_likely_bot: bool


def is_automation_user_agent(user_agent: str) -> bool:
    ua = user_agent.lower()
    return any(signature in ua for signature in AUTOMATION_SIGNATURES)


def _matches_origin(value: str, allowed_origins: Iterable[str]) -> bool:
    value = value.rstrip("/")
    for origin in allowed_origins:
        origin = origin.rstrip("/")
        if value == origin or value.startswith(origin + "/"):
            return True
    return False


def score_request(
    headers: Mapping[str, str],
    allowed_origins: Iterable[str] = (),
    bot_threshold: int = DEFAULT_BOT_THRESHOLD,
    expects_json: bool = True,
) -> SuspicionReport:
    """
    Score a request from its headers (names lowercased).

    Origin/Referer are only compared when allowed_origins is non-empty.
    """
    allowed_origins = tuple(allowed_origins)
    score = 0
    reasons: list[str] = []

    def add(points: int, reason: str) -> None:
        nonlocal score
        score += points
        reasons.append(reason)

    # Fetch metadata
    site = headers.get("sec-fetch-site")
    if not site:
        add(MISSING_SEC_FETCH_SITE, "missing Sec-Fetch-Site")
    elif site.lower() not in _SAME_SITE:
        add(CROSS_SITE_SEC_FETCH_SITE, f"Sec-Fetch-Site {site}")

    mode = headers.get("sec-fetch-mode")
    if not mode:
        add(MISSING_SEC_FETCH_MODE, "missing Sec-Fetch-Mode")
    elif mode.lower() not in _FETCH_MODES:
        add(UNEXPECTED_SEC_FETCH_MODE, f"Sec-Fetch-Mode {mode}")

    dest = headers.get("sec-fetch-dest")
    if not dest:
        add(MISSING_SEC_FETCH_DEST, "missing Sec-Fetch-Dest")
    elif dest.lower() != "empty":
        add(UNEXPECTED_SEC_FETCH_DEST, f"Sec-Fetch-Dest {dest}")

    # Origin / Referer
    origin = headers.get("origin")
    if not origin:
        add(MISSING_ORIGIN, "missing Origin")
    elif allowed_origins and not _matches_origin(origin, allowed_origins):
        add(MISMATCHED_ORIGIN, "Origin not allowed")

    referer = headers.get("referer")
    if not referer:
        add(MISSING_REFERER, "missing Referer")
    elif allowed_origins and not _matches_origin(referer, allowed_origins):
        add(MISMATCHED_REFERER, "Referer not allowed")

    # Client
    user_agent = headers.get("user-agent")
    if not user_agent:
        add(MISSING_USER_AGENT, "missing User-Agent")
    elif is_automation_user_agent(user_agent):
        add(AUTOMATION_USER_AGENT, "automation User-Agent")

    if not headers.get("accept-language"):
        add(MISSING_ACCEPT_LANGUAGE, "missing Accept-Language")
    if not headers.get("accept-encoding"):
        add(MISSING_ACCEPT_ENCODING, "missing Accept-Encoding")

    if expects_json:
        content_type = headers.get("content-type", "")
        if content_type.split(";")[0].strip().lower() != "application/json":
            add(UNEXPECTED_CONTENT_TYPE, "unexpected Content-Type")

    return SuspicionReport(
        score=score,
        reasons=tuple(reasons),
        is_likely_bot=score >= bot_threshold,
    )
