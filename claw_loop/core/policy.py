"""
安全闸门 - 模型输出与副作用动作之间唯一的安全边界

evaluate() 是纯函数：相同的 (动作, 参数, 自主级别, 限速状态) 总是得到相同的判定。
"""
import logging
import os
import re
import shlex
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import unquote

from .types import AutonomyLevel, GateDecision, RiskLevel

logger = logging.getLogger(__name__)


DEFAULT_ACTION_RISKS: Dict[str, RiskLevel] = {
    "read_file": RiskLevel.LOW,
    "file_read": RiskLevel.LOW,
    "list_files": RiskLevel.LOW,
    "list_dir": RiskLevel.LOW,
    "glob": RiskLevel.LOW,
    "grep": RiskLevel.LOW,
    "search_files": RiskLevel.LOW,
    "memory_recall": RiskLevel.LOW,
    "write_file": RiskLevel.MEDIUM,
    "file_write": RiskLevel.MEDIUM,
    "edit_file": RiskLevel.MEDIUM,
    "move_file": RiskLevel.MEDIUM,
    "memory_store": RiskLevel.MEDIUM,
    "http_request": RiskLevel.MEDIUM,
    "delete_file": RiskLevel.HIGH,
}

DEFAULT_SHELL_ACTIONS = ("shell", "bash", "run_command", "execute_command")

DEFAULT_ALLOWED_COMMANDS = (
    "git", "npm", "cargo", "ls", "cat", "grep", "find", "echo",
    "pwd", "wc", "head", "tail", "date",
)

DEFAULT_FORBIDDEN_PATHS = (
    "/etc", "/root", "/home", "/usr", "/bin", "/sbin", "/lib", "/opt", "/boot",
    "/dev", "/proc", "/sys", "/var", "/tmp",
    "~/.ssh", "~/.gnupg", "~/.aws", "~/.config",
)

READ_ONLY_COMMANDS = frozenset({
    "ls", "cat", "grep", "find", "echo", "pwd", "wc", "head", "tail", "date",
    "which", "tree", "stat", "du", "df", "file",
})

READ_ONLY_GIT_SUBCOMMANDS = frozenset({"status", "log", "diff", "show", "branch", "remote", "blame"})

# 只读命令里能删除、写文件或执行其他程序的参数 (精确匹配, 以 * 结尾表示前缀)
WRITE_CAPABLE_FLAGS: Dict[str, Tuple[RiskLevel, Tuple[str, ...]]] = {
    "find": (RiskLevel.HIGH, ("-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint*", "-fls")),
    "tree": (RiskLevel.MEDIUM, ("-o",)),
    "date": (RiskLevel.MEDIUM, ("-s", "--set*")),
}

# git 只读子命令里会修改仓库的参数
GIT_WRITE_ARGS: Dict[str, Tuple[str, ...]] = {
    "branch": ("-d", "-D", "--delete", "-m", "-M", "--move", "-c", "-C", "--copy",
               "-f", "--force", "-u", "--set-upstream-to*", "--unset-upstream", "--edit-description"),
    "remote": ("add", "remove", "rm", "rename", "set-url", "set-head", "set-branches", "prune", "update"),
}

HIGH_RISK_COMMAND_PATTERNS = (
    r"\brm\s+-[a-zA-Z]*[rf]",
    r"\bsudo\b",
    r"\bsu\b",
    r"\bmkfs",
    r"\bdd\b.*\bof=",
    r"\bchmod\s+(-R\s+)?777",
    r"\bchown\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bkill(all)?\b",
    r"\b(curl|wget)\b.*\|\s*(ba|z)?sh",
    r"\bgit\s+push\b.*(--force|\s-f\b)",
    r"\bgit\s+reset\s+--hard",
    r"\bgit\s+clean\s+-[a-zA-Z]*f",
    r"\bnpm\s+publish\b",
    r"\bcargo\s+publish\b",
)

# 自由文本参数不做shell元字符检查
FREE_TEXT_KEYS = frozenset({
    "content", "text", "body", "message", "query", "pattern",
    "old_string", "new_string", "summary", "description",
})

PATH_KEYS = frozenset({
    "path", "file", "file_path", "filename", "target", "source", "destination",
    "dir", "directory", "cwd", "workdir",
})

COMMAND_KEYS = ("command", "cmd")

_INJECTION_RE = re.compile(r";|&&?|\|\|?|`|\$\(|\$\{|\$[A-Za-z_]|>|<|\r|\n")
_HIGH_RISK_RES = [re.compile(p, re.IGNORECASE) for p in HIGH_RISK_COMMAND_PATTERNS]


@dataclass
class SecurityPolicy:
    """安全策略配置"""
    level: AutonomyLevel = AutonomyLevel.SUPERVISED
    workspace_dir: str = "."
    workspace_only: bool = True
    allowed_commands: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    forbidden_paths: List[str] = field(default_factory=lambda: list(DEFAULT_FORBIDDEN_PATHS))
    allowed_roots: List[str] = field(default_factory=list)
    max_actions_per_hour: int = 20
    require_approval_for_medium_risk: bool = True
    auto_approve: List[str] = field(default_factory=lambda: ["file_read", "memory_recall"])
    always_ask: List[str] = field(default_factory=list)
    pre_approved: List[str] = field(default_factory=list)
    action_risks: Dict[str, RiskLevel] = field(default_factory=lambda: dict(DEFAULT_ACTION_RISKS))
    shell_actions: List[str] = field(default_factory=lambda: list(DEFAULT_SHELL_ACTIONS))


class ActionTracker:
    """滚动一小时的动作计数器，同一会话内共享一把锁"""

    def __init__(self, window_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._actions: deque = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._actions and self._actions[0] <= cutoff:
            self._actions.popleft()

    def record(self) -> int:
        """记录一次动作，返回窗口内的动作数"""
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._actions.append(now)
            return len(self._actions)

    def count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._actions)

    def reset(self) -> None:
        with self._lock:
            self._actions.clear()


class SecurityGate:
    """安全闸门"""

    def __init__(
        self,
        policy: Optional[SecurityPolicy] = None,
        autonomy_level: Optional[AutonomyLevel] = None,
        tracker: Optional[ActionTracker] = None
    ):
        self.policy = policy or SecurityPolicy()
        self.autonomy_level = autonomy_level or self.policy.level
        self.tracker = tracker or ActionTracker()
        self.workspace = Path(os.path.expanduser(self.policy.workspace_dir)).resolve()
        self._allowed_roots = [self._resolve_root(r) for r in self.policy.allowed_roots]
        self._shell_actions: Set[str] = set(self.policy.shell_actions)

    def _resolve_root(self, root: str) -> Path:
        path = Path(os.path.expanduser(root))
        if not path.is_absolute():
            path = self.workspace / path
        return path.resolve()

    def evaluate(
        self,
        action: Any,
        arguments: Any,
        autonomy_level: Optional[AutonomyLevel] = None
    ) -> GateDecision:
        """
        判定一次动作

        Returns:
            GateDecision: ALLOW, DENY(reason) 或 REQUIRE_APPROVAL(reason)
        """
        level = autonomy_level or self.autonomy_level

        # 输入不明确时默认拒绝
        if not isinstance(action, str) or not action.strip():
            return GateDecision.deny("Action name is missing or invalid")
        if not isinstance(arguments, dict):
            return GateDecision.deny(f"Arguments for '{action}' are not a key/value map")

        violation = self._find_unsafe_pattern(arguments)
        if violation:
            return GateDecision.deny(violation)

        risk, reason = self.classify(action, arguments)
        if risk is None:
            return GateDecision.deny(reason)

        violation = self._check_paths(action, arguments)
        if violation:
            return GateDecision.deny(violation, risk)

        if self.tracker.count() >= self.policy.max_actions_per_hour:
            return GateDecision.deny(
                f"Rate limit exceeded: {self.policy.max_actions_per_hour} actions per hour",
                risk
            )

        return self._apply_autonomy(action, risk, level)

    def record_action(self) -> int:
        """动作真正执行前计入限速窗口"""
        return self.tracker.record()

    # ------------------------------------------------------------------
    # 风险分类
    # ------------------------------------------------------------------

    def classify(self, action: str, arguments: Dict[str, Any]) -> Tuple[Optional[RiskLevel], str]:
        """静态风险分类；未列出的动作返回 None（默认拒绝）"""
        if action in self._shell_actions:
            return self._classify_command(arguments)
        risk = self.policy.action_risks.get(action)
        if risk is None:
            return None, f"Action '{action}' is not in the allowlist"
        return RiskLevel(risk), ""

    def _classify_command(self, arguments: Dict[str, Any]) -> Tuple[Optional[RiskLevel], str]:
        command = self._command_of(arguments)
        if command is None:
            return None, "Shell action without a command"
        try:
            tokens = shlex.split(command)
        except ValueError as e:
            return None, f"Command could not be parsed: {e}"
        if not tokens:
            return None, "Shell action with an empty command"

        executable = os.path.basename(tokens[0])
        if executable not in self.policy.allowed_commands:
            return None, f"Command '{executable}' is not in the allowed commands"

        for pattern in _HIGH_RISK_RES:
            if pattern.search(command):
                return RiskLevel.HIGH, ""
        if executable in READ_ONLY_COMMANDS:
            risk, flags = WRITE_CAPABLE_FLAGS.get(executable, (RiskLevel.LOW, ()))
            if any(_matches_flag(token, flags) for token in tokens[1:]):
                return risk, ""
            return RiskLevel.LOW, ""
        if executable == "git" and len(tokens) > 1 and tokens[1] in READ_ONLY_GIT_SUBCOMMANDS:
            write_args = GIT_WRITE_ARGS.get(tokens[1], ())
            if any(_matches_flag(token, write_args) for token in tokens[2:]):
                return RiskLevel.MEDIUM, ""
            return RiskLevel.LOW, ""
        return RiskLevel.MEDIUM, ""

    @staticmethod
    def _command_of(arguments: Dict[str, Any]) -> Optional[str]:
        for key in COMMAND_KEYS:
            value = arguments.get(key)
            if isinstance(value, str) and value.strip():
                return value
        return None

    # ------------------------------------------------------------------
    # 硬编码的不安全模式
    # ------------------------------------------------------------------

    def _find_unsafe_pattern(self, arguments: Dict[str, Any]) -> Optional[str]:
        for key, value in _walk_strings(arguments):
            if "\x00" in value:
                return f"Null byte in argument '{key}'"
            if key.lower() in FREE_TEXT_KEYS:
                continue
            if "%00" in value:
                return f"Encoded null byte in argument '{key}'"
            match = _INJECTION_RE.search(value)
            if match:
                return f"Shell metacharacter {match.group(0)!r} in argument '{key}'"
        return None

    # ------------------------------------------------------------------
    # 工作区边界
    # ------------------------------------------------------------------

    def _check_paths(self, action: str, arguments: Dict[str, Any]) -> Optional[str]:
        for key, value in _walk_strings(arguments):
            if key.lower() in PATH_KEYS:
                violation = self.check_path(value)
                if violation:
                    return violation

        if action in self._shell_actions:
            command = self._command_of(arguments) or ""
            for token in shlex.split(command)[1:]:
                candidate = token.split("=", 1)[1] if token.startswith("-") and "=" in token else token
                if not candidate or (candidate.startswith("-") and candidate == token):
                    continue
                if _looks_like_path(candidate) or os.path.lexists(self.workspace / candidate):
                    violation = self.check_path(candidate)
                    if violation:
                        return violation
        return None

    def check_path(self, raw: str) -> Optional[str]:
        """规范化后校验路径，返回违规原因；合法时返回 None"""
        decoded = raw
        for _ in range(3):
            unquoted = unquote(decoded)
            if unquoted == decoded:
                break
            decoded = unquoted

        if "\x00" in decoded:
            return f"Null byte in path '{raw}'"

        expanded = os.path.expanduser(decoded)
        if ".." in PurePosixPath(expanded.replace("\\", "/")).parts:
            return f"Path traversal in '{raw}'"

        candidate = Path(expanded)
        if not candidate.is_absolute():
            candidate = self.workspace / candidate
        resolved = candidate.resolve()

        if self.is_resolved_path_allowed(resolved):
            return None
        if self.policy.workspace_only:
            return f"Path '{raw}' resolves outside the workspace"
        for forbidden in self.policy.forbidden_paths:
            root = Path(os.path.expanduser(forbidden))
            if _is_within(resolved, root) or _is_within(Path(expanded), root):
                return f"Path '{raw}' is forbidden"
        return None

    def is_resolved_path_allowed(self, resolved: Path) -> bool:
        if _is_within(resolved, self.workspace):
            return True
        return any(_is_within(resolved, root) for root in self._allowed_roots)

    # ------------------------------------------------------------------
    # 自主级别
    # ------------------------------------------------------------------

    def _apply_autonomy(self, action: str, risk: RiskLevel, level: AutonomyLevel) -> GateDecision:
        if level == AutonomyLevel.FULL:
            return GateDecision.allow(risk)

        if level == AutonomyLevel.READ_ONLY:
            if risk == RiskLevel.LOW:
                return GateDecision.allow(risk)
            return GateDecision.deny(f"Read-only mode forbids {risk.value}-risk action '{action}'", risk)

        if risk == RiskLevel.HIGH:
            if action in self.policy.pre_approved:
                return GateDecision.allow(risk, "pre-approved")
            return GateDecision.deny(f"High-risk action '{action}' requires pre-approval", risk)

        if action in self.policy.always_ask:
            return GateDecision.require_approval(f"'{action}' always requires approval", risk)

        if risk == RiskLevel.MEDIUM:
            if not self.policy.require_approval_for_medium_risk or action in self.policy.auto_approve:
                return GateDecision.allow(risk)
            return GateDecision.require_approval(f"Medium-risk action '{action}' needs approval", risk)

        return GateDecision.allow(risk)

    def describe_action(self, action: str, arguments: Dict[str, Any], decision: GateDecision) -> str:
        """生成人工确认提示"""
        risk = decision.risk.value.upper() if decision.risk else "UNKNOWN"
        lines = [
            f"Tool: {action}",
            f"Risk level: {risk}",
            f"Reason: {decision.reason}",
            "Arguments:"
        ]
        for key, value in arguments.items():
            text = str(value)
            if len(text) > 100:
                text = text[:100] + "..."
            lines.append(f"  - {key}: {text}")
        return "\n".join(lines)


def _walk_strings(value: Any, key: str = "") -> Iterator[Tuple[str, str]]:
    """递归遍历参数中的所有字符串，带上所属的键名"""
    if isinstance(value, str):
        yield key, value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from _walk_strings(v, str(k))
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_strings(item, key)


def _matches_flag(token: str, flags: Tuple[str, ...]) -> bool:
    option = token.split("=", 1)[0]
    for flag in flags:
        if flag.endswith("*"):
            if option.startswith(flag[:-1]):
                return True
        elif option == flag:
            return True
    return False


def _looks_like_path(token: str) -> bool:
    lowered = token.lower()
    return (
        token.startswith(("/", "~"))
        or "/" in token
        or ".." in token
        or "%2e" in lowered
        or "%2f" in lowered
    )


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False
