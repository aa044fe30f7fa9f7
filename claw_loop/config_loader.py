"""
配置加载器 - YAML 配置文件 + pydantic 校验
"""
import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from claw_loop.core.agent_loop import AgentConfig, DEFAULT_SYSTEM_PROMPT
from claw_loop.core.compressor import HistoryCompactor
from claw_loop.core.errors import ConfigError
from claw_loop.core.llm_client import OpenAIProvider, Provider
from claw_loop.core.policy import (
    DEFAULT_ALLOWED_COMMANDS, DEFAULT_FORBIDDEN_PATHS, SecurityPolicy
)
from claw_loop.core.types import AutonomyLevel
from claw_loop.memory.manager import MarkdownMemory

logger = logging.getLogger(__name__)


class LLMSettings(BaseModel):
    """模型后端配置"""
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    native_tools: bool = True

    def create_provider(self) -> OpenAIProvider:
        return OpenAIProvider(
            api_key=self.api_key,
            base_url=self.base_url,
            model=self.model,
            provider=self.provider,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            native_tools=self.native_tools
        )


class AgentSettings(BaseModel):
    """回合引擎配置"""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tool_iterations: int = Field(default=10, ge=0)
    max_history_messages: int = Field(default=50, gt=0)
    keep_recent_messages: int = Field(default=10, ge=0)
    parallel_tools: bool = False
    tool_timeout: Optional[float] = 60.0
    provider_max_retries: int = Field(default=3, ge=0)
    provider_backoff_base: float = 1.0
    provider_backoff_max: float = 30.0
    approval_timeout: Optional[float] = 300.0
    turn_timeout: Optional[float] = None
    memory_recall_limit: int = 5
    remember_turns: bool = True

    @model_validator(mode="after")
    def _compaction_window(self) -> "AgentSettings":
        if self.keep_recent_messages >= self.max_history_messages - 2:
            raise ValueError("keep_recent_messages must be smaller than max_history_messages - 2")
        return self

    def create_compactor(self, summarizer: Provider) -> HistoryCompactor:
        return HistoryCompactor(
            summarizer,
            threshold=self.max_history_messages,
            keep_recent=self.keep_recent_messages
        )

    def to_agent_config(self) -> AgentConfig:
        return AgentConfig(
            system_prompt=self.system_prompt,
            max_iterations=self.max_tool_iterations,
            tool_timeout=self.tool_timeout,
            parallel_tools=self.parallel_tools,
            provider_max_retries=self.provider_max_retries,
            provider_backoff_base=self.provider_backoff_base,
            provider_backoff_max=self.provider_backoff_max,
            approval_timeout=self.approval_timeout,
            turn_timeout=self.turn_timeout,
            memory_recall_limit=self.memory_recall_limit,
            remember_turns=self.remember_turns
        )


class AutonomySettings(BaseModel):
    """安全策略配置"""
    level: AutonomyLevel = AutonomyLevel.SUPERVISED
    workspace_dir: str = "."
    workspace_only: bool = True
    allowed_commands: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    forbidden_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_PATHS))
    allowed_roots: List[str] = Field(default_factory=list)
    max_actions_per_hour: int = 20
    require_approval_for_medium_risk: bool = True
    auto_approve: List[str] = Field(default_factory=lambda: ["file_read", "memory_recall"])
    always_ask: List[str] = Field(default_factory=list)
    pre_approved: List[str] = Field(default_factory=list)

    @field_validator("max_actions_per_hour")
    @classmethod
    def _positive_rate(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_actions_per_hour must be greater than 0")
        return value

    def to_policy(self) -> SecurityPolicy:
        return SecurityPolicy(
            level=self.level,
            workspace_dir=self.workspace_dir,
            workspace_only=self.workspace_only,
            allowed_commands=list(self.allowed_commands),
            forbidden_paths=list(self.forbidden_paths),
            allowed_roots=list(self.allowed_roots),
            max_actions_per_hour=self.max_actions_per_hour,
            require_approval_for_medium_risk=self.require_approval_for_medium_risk,
            auto_approve=list(self.auto_approve),
            always_ask=list(self.always_ask),
            pre_approved=list(self.pre_approved)
        )


class LoggingSettings(BaseModel):
    """日志配置"""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{value}'")
        return level


class MemorySettings(BaseModel):
    """记忆配置"""
    enabled: bool = False
    path: str = "~/.claw_loop/memory.md"

    def create_memory(self) -> Optional[MarkdownMemory]:
        return MarkdownMemory(self.path) if self.enabled else None


class Settings(BaseModel):
    """完整配置"""
    llm: LLMSettings = Field(default_factory=LLMSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    autonomy: AutonomySettings = Field(default_factory=AutonomySettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_config(config_path: str = "config.yaml") -> Settings:
    """加载配置文件（文件不存在时使用默认值）"""
    config = get_default_config()

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if user_config:
            if not isinstance(user_config, dict):
                raise ConfigError(f"{config_path} must contain a mapping at the top level")
            for section, value in list(user_config.items()):
                if section not in config or isinstance(value, dict):
                    continue
                if value is not None:
                    raise ConfigError(f"Section '{section}' in {config_path} must be a mapping")
                # 空段落使用默认值
                del user_config[section]
            # 合并配置
            config = deep_merge(config, user_config)
        logger.debug(f"Loaded configuration from {config_path}")

    # 从环境变量读取API密钥
    if not config['llm'].get('api_key'):
        if config['llm'].get('provider') == 'gemini':
            config['llm']['api_key'] = os.getenv('GEMINI_API_KEY')
        else:
            config['llm']['api_key'] = os.getenv('OPENAI_API_KEY')

    # 展开路径中的 ~
    config['autonomy']['workspace_dir'] = os.path.expanduser(config['autonomy']['workspace_dir'])
    config['memory']['path'] = os.path.expanduser(config['memory']['path'])

    try:
        return Settings.model_validate(config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return Settings().model_dump(mode="json")


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(settings: Settings, config_path: str = "config.yaml") -> None:
    """保存配置到文件（不写入 API 密钥）"""
    data = settings.model_dump(mode="json")
    data['llm'].pop('api_key', None)
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True)


def configure_logging(settings: Optional[LoggingSettings] = None) -> None:
    """按配置初始化标准库 logging"""
    settings = settings or LoggingSettings()
    logging.basicConfig(level=getattr(logging, settings.level), format=settings.format)
