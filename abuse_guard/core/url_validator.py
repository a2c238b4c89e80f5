"""
Base URL validation for outbound AI relay endpoints.

Users may point the relay at third-party proxies only. Official provider
APIs, sensitive government, military, education and finance domains, and
local or private addresses are blocked. Malformed input is reported as
invalid but not blocked, so callers can tell a typo from a policy hit.
"""

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import SplitResult, urlsplit

# Checked in order; the first match is reported as the blocked domain.
URL_BLACKLIST = (
    # OpenAI
    "api.openai.com",
    "openai.com",
    "chat.openai.com",
    # Anthropic
    "api.anthropic.com",
    "anthropic.com",
    "claude.ai",
    "console.anthropic.com",
    # DeepSeek
    "api.deepseek.com",
    "deepseek.com",
    "chat.deepseek.com",
    "platform.deepseek.com",
    # Alibaba Qwen
    "dashscope.aliyuncs.com",
    "qwen.aliyun.com",
    "tongyi.aliyun.com",
    "ecs.aliyuncs.com",
    "aliyun.com",
    "alibaba.com",
    "taobao.com",
    # Google Gemini
    "generativelanguage.googleapis.com",
    "ai.google.dev",
    "makersuite.google.com",
    "googleapis.com",
    "google.com",
    "googleapi.com",
    "bard.google.com",
    # Microsoft / Azure
    "azure.com",
    "microsoft.com",
    "openai.azure.com",
    "cognitiveservices.azure.com",
    # Baidu ERNIE
    "aip.baidubce.com",
    "baidu.com",
    "baidubce.com",
    # Tencent Hunyuan
    "hunyuan.tencent.com",
    "tencent.com",
    "qq.com",
    # ByteDance Doubao
    "volcengine.com",
    "bytedance.com",
    "douyin.com",
    "tiktok.com",
    # iFlytek Spark
    "xfyun.cn",
    "iflytek.com",
    # Zhipu AI
    "zhipuai.cn",
    "bigmodel.cn",
    # Moonshot Kimi
    "moonshot.cn",
    "kimi.ai",
    # 01.AI
    "lingyiwanwu.com",
    "01.ai",
    # MiniMax
    "minimax.chat",
    "minimaxi.com",
    # Government and military
    "gov.cn",
    "gov.us",
    "gov.uk",
    "gov.au",
    "gov.ca",
    "government.com",
    "mil.cn",
    "mil.us",
    "military.com",
    "army.mil",
    "navy.mil",
    "airforce.mil",
    # Education
    "edu.cn",
    "edu.us",
    # Banking and finance
    "bank.com",
    "banking.com",
    "finance.gov",
    # Other sensitive domains
    "police.gov",
    "fbi.gov",
    "cia.gov",
    "nsa.gov",
)

ALLOWED_SCHEMES = ("http", "https")
LOCAL_HOSTS = ("localhost", "127.0.0.1", "0.0.0.0", "::1")
PRIVATE_HOST_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
_HOSTNAME_RE = re.compile(r"^[a-z0-9_.-]+$")
_NUMERIC_LABEL_RE = re.compile(r"^(0x[0-9a-f]*|[0-9]+)$")

REASON_EMPTY = "URL must not be empty"
REASON_MALFORMED = "Malformed URL"
REASON_SCHEME = "Only HTTP and HTTPS URLs are supported"
REASON_LOCAL = "Local address is not allowed"
REASON_BLACKLISTED = "This URL is blacklisted and cannot be used"
REASON_OK = "URL is valid"


@dataclass(frozen=True)
class URLValidationResult:
    """Outcome of validating a base URL."""
    is_valid: bool
    is_blocked: bool
    reason: Optional[str] = None
    blocked_domain: Optional[str] = None


def _canonical_ipv4(hostname: str) -> Optional[str]:
    """Resolve the shorthand IPv4 forms a browser accepts (``127.1``,
    ``2130706433``, ``0x7f000001``, ``017700000001``) to dotted-quad.

    Returns ``hostname`` unchanged if it is not numeric, or None if it
    looks numeric but is not a valid address.
    """
    if not _NUMERIC_LABEL_RE.match(hostname.rsplit(".", 1)[-1]):
        return hostname
    try:
        return str(ipaddress.IPv4Address(socket.inet_aton(hostname)))
    except OSError:
        return None


def _parse(url: str, lowercase: bool = True) -> Optional[Tuple[SplitResult, str]]:
    """Default to https and parse into the split URL and its canonical host.

    Returns None if malformed.
    """
    clean = url.strip()
    if lowercase:
        clean = clean.lower()
    if not _SCHEME_RE.match(clean.lower()):
        clean = f"https://{clean}"
    try:
        parts = urlsplit(clean)
        parts.port  # raises ValueError for an out of range or non-numeric port
    except ValueError:
        return None

    hostname = parts.hostname
    if not hostname:
        return None
    if ":" in hostname or "[" in parts.netloc:
        try:
            return parts, ipaddress.IPv6Address(hostname).compressed
        except ValueError:
            return None

    # A fully qualified name may end in a single dot.
    if hostname.endswith("."):
        hostname = hostname[:-1]
    if not hostname or not _HOSTNAME_RE.match(hostname) or ".." in hostname:
        return None
    hostname = _canonical_ipv4(hostname)
    if hostname is None:
        return None
    return parts, hostname


def is_local_address(hostname: str) -> bool:
    if hostname in LOCAL_HOSTS:
        return True
    return any(pattern.match(hostname) for pattern in PRIVATE_HOST_PATTERNS)


def check_blacklist(hostname: str) -> Optional[str]:
    """Return the first blacklisted domain ``hostname`` equals or is a subdomain of.

    The match needs a dot boundary: ``sub.api.openai.com`` matches
    ``openai.com`` but ``api-openai.com`` does not.
    """
    for domain in URL_BLACKLIST:
        if hostname == domain or hostname.endswith(f".{domain}"):
            return domain
    return None


def validate_base_url(url: str) -> URLValidationResult:
    """Validate a user-supplied AI relay base URL.

    Args:
        url: URL with or without scheme; ``https://`` is assumed if missing

    Returns:
        URLValidationResult. Blocked results carry the offending hostname
        or blacklisted domain in ``blocked_domain``.
    """
    if not url or not isinstance(url, str) or not url.strip():
        return URLValidationResult(is_valid=False, is_blocked=False, reason=REASON_EMPTY)

    parsed = _parse(url)
    if parsed is None:
        return URLValidationResult(is_valid=False, is_blocked=False, reason=REASON_MALFORMED)
    parts, hostname = parsed
    if parts.scheme not in ALLOWED_SCHEMES:
        return URLValidationResult(is_valid=False, is_blocked=False, reason=REASON_SCHEME)

    if is_local_address(hostname):
        return URLValidationResult(
            is_valid=False, is_blocked=True, reason=REASON_LOCAL, blocked_domain=hostname
        )

    blocked = check_blacklist(hostname)
    if blocked:
        return URLValidationResult(
            is_valid=False, is_blocked=True, reason=REASON_BLACKLISTED, blocked_domain=blocked
        )

    return URLValidationResult(is_valid=True, is_blocked=False, reason=REASON_OK)


def get_blocked_domains() -> List[str]:
    return list(URL_BLACKLIST)


def is_official_api(url: str) -> bool:
    """Return True if ``url`` points at a blacklisted domain."""
    if not url or not isinstance(url, str):
        return False
    parsed = _parse(url)
    return parsed is not None and check_blacklist(parsed[1]) is not None


def format_url_for_display(url: str) -> str:
    """Reduce a URL to scheme, host and path, dropping credentials and query.

    Returns ``url`` unchanged if it cannot be parsed.
    """
    parsed = _parse(url, lowercase=False) if url and isinstance(url, str) else None
    if parsed is None:
        return url
    parts = parsed[0]
    return f"{parts.scheme}://{parts.hostname}{parts.path or '/'}"


def get_url_validation_rules() -> Dict[str, List[str]]:
    return {
        "blocked": [
            "Official AI provider APIs",
            "Government and military domains (.gov, .mil, ...)",
            "Education domains (.edu, ...)",
            "Banks and financial institutions",
            "Local and private network addresses",
        ],
        "requirements": [
            "URL must use HTTP or HTTPS",
            "Local addresses are not allowed",
            "Blacklisted domains are not allowed",
            "URL must be well formed",
            "Prefer a trusted third-party proxy",
        ],
    }
