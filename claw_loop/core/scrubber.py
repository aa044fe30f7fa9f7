"""
密钥脱敏 - 工具输出进入历史前屏蔽敏感键值
"""
import re
from typing import Iterable, Optional

REDACTED = "[REDACTED]"

DEFAULT_SENSITIVE_KEYS = ("api[_-]?key", "secret", "token", "password", "passwd")

# 常见凭证前缀
DEFAULT_TOKEN_PREFIXES = ("sk-", "xoxb-", "xoxp-", "ghp_", "gho_", "ghu_", "github_pat_")


class SecretScrubber:
    """
    屏蔽 key:value / key=value 形式的敏感值

    只用于工具来源的文本；模型和用户的文本保持原样。
    """

    def __init__(
        self,
        sensitive_keys: Optional[Iterable[str]] = None,
        token_prefixes: Optional[Iterable[str]] = None,
        marker: str = REDACTED
    ):
        self.marker = marker
        keys = "|".join(sensitive_keys or DEFAULT_SENSITIVE_KEYS)
        marker_re = re.escape(marker)
        # 带引号的值一直匹配到闭合引号，可以包含空格；引号没有闭合时匹配到行尾
        self._key_value_re = re.compile(
            r"(?P<key>[A-Za-z0-9_.\-]*(?:" + keys + r")[A-Za-z0-9_\-]*)"
            r"(?P<sep>[\"']?\s*[:=]\s*)"
            r"(?:(?P<quote>[\"'])(?!" + marker_re + r"(?P=quote))"
            r"(?:\\.|(?!(?P=quote))[^\\\n])+(?P=quote)"
            r"|(?P<open>[\"'])(?!" + marker_re + r")[^\"'\n]+"
            r"|(?!" + marker_re + r")[^\s\"',;&}\]]+)",
            re.IGNORECASE
        )
        prefixes = "|".join(re.escape(p) for p in (token_prefixes or DEFAULT_TOKEN_PREFIXES))
        self._prefix_re = re.compile(
            r"(?<![A-Za-z0-9])(?:" + prefixes + r")[A-Za-z0-9_.:\-]+"
        )

    def scrub(self, text: str) -> str:
        if not text:
            return text
        scrubbed = self._key_value_re.sub(self._mask, text)
        return self._prefix_re.sub(self.marker, scrubbed)

    def _mask(self, match: "re.Match") -> str:
        quote = match.group("quote")
        if quote:
            return f"{match.group('key')}{match.group('sep')}{quote}{self.marker}{quote}"
        return f"{match.group('key')}{match.group('sep')}{match.group('open') or ''}{self.marker}"


def redact(value: str) -> str:
    """日志用：只显示前4个字符"""
    if len(value) <= 4:
        return "***"
    return f"{value[:4]}***"
