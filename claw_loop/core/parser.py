"""
工具调用解析器 - 从模型自由文本中提取工具调用

按优先级尝试多种编码，第一个匹配的策略胜出：
1. 整段 JSON 函数调用对象
2. <tool_call> 等标签块（支持未闭合标签的恢复）
3. 标注为工具调用的代码围栏
4. 厂商专用的符号分隔块
5. tool_calls 数组信封
6. 网关使用的别名键
7. 结果标签（只做清理，永不触发执行）
"""
import html
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .types import ParsedToolCall, ParseResult, ToolCallFormat

logger = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()
_MISSING = object()

_IDENT_RE = re.compile(r"[A-Za-z_][\w.\-]*")
_NAMED_BODY_RE = re.compile(r"([A-Za-z_][\w.\-]*)\s*(\{.*\})", re.DOTALL)
_JSON_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n(.*?)\r?\n?[ \t]*```", re.DOTALL)
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


def _loads(text: str, default: Any = None) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return default


def _strip_json_fence(text: str) -> str:
    """去掉包裹整段响应的 ```json 围栏"""
    stripped = text.strip()
    match = _JSON_FENCE_RE.fullmatch(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _join(parts: Iterable[str]) -> str:
    return _EXCESS_NEWLINES_RE.sub("\n\n", "".join(parts)).strip()


def _decode_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    """参数可以是对象，也可以是 JSON 编码的字符串"""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        decoded = _loads(raw)
        if isinstance(decoded, dict):
            return decoded
    return None


def _call_from_mapping(
    obj: Any,
    fmt: ToolCallFormat,
    require_arguments: bool = False
) -> Optional[ParsedToolCall]:
    """把 {"name", "arguments"} 形状的对象转换为调用"""
    if not isinstance(obj, dict):
        return None
    function = obj.get("function")
    if isinstance(function, dict):
        obj = function
    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    raw = obj.get("arguments", obj.get("parameters", _MISSING))
    if raw is _MISSING:
        if require_arguments:
            return None
        raw = None
    arguments = _decode_arguments(raw)
    if arguments is None:
        return None
    return ParsedToolCall(name=name.strip(), arguments=arguments, format=fmt)


def _calls_from_value(value: Any, fmt: ToolCallFormat) -> List[ParsedToolCall]:
    """单个对象或对象数组"""
    items = value if isinstance(value, list) else [value]
    calls = []
    for item in items:
        call = _call_from_mapping(item, fmt)
        if call:
            calls.append(call)
    return calls


def _first_json_value(text: str, start: int = 0, end: Optional[int] = None) -> Optional[Tuple[Any, int]]:
    """增量提取第一个语法完整的 JSON 值"""
    limit = len(text) if end is None else end
    pos = start
    while pos < limit:
        brace = min(
            (i for i in (text.find("{", pos, limit), text.find("[", pos, limit)) if i >= 0),
            default=-1
        )
        if brace < 0:
            return None
        try:
            value, value_end = _DECODER.raw_decode(text, brace)
        except ValueError:
            pos = brace + 1
            continue
        if value_end <= limit:
            return value, value_end
        pos = brace + 1
    return None


def _parse_call_body(body: str, fmt: ToolCallFormat) -> List[ParsedToolCall]:
    """解析标签或围栏内部的内容"""
    body = body.strip()
    if not body:
        return []

    value = _loads(body, _MISSING)
    if value is not _MISSING:
        return _calls_from_value(value, fmt)

    # name{"arg": ...} 形式
    named = _NAMED_BODY_RE.fullmatch(body)
    if named:
        arguments = _loads(named.group(2))
        if isinstance(arguments, dict):
            return [ParsedToolCall(name=named.group(1), arguments=arguments, format=fmt)]

    found = _first_json_value(body)
    if found:
        return _calls_from_value(found[0], fmt)
    return []


def _json_or_text(raw: str, as_string: Optional[bool] = None) -> Any:
    """参数值默认按文本处理；对象/数组或 string="false" 时才按 JSON 解码"""
    value = html.unescape(raw.strip())
    if as_string:
        return value
    if as_string is None and not value.startswith(("{", "[")):
        return value
    return _loads(value, value)


class ParseStrategy(ABC):
    """一种编码的识别与提取，彼此独立、无共享状态"""

    format: ToolCallFormat = ToolCallFormat.NONE

    @property
    def name(self) -> str:
        return self.format.value

    @abstractmethod
    def attempt(self, text: str) -> Optional[ParseResult]:
        """匹配时返回结果，否则返回 None"""


class JsonObjectStrategy(ParseStrategy):
    """整段响应就是一个函数调用 JSON 对象"""

    format = ToolCallFormat.JSON_OBJECT

    def attempt(self, text: str) -> Optional[ParseResult]:
        body = _strip_json_fence(text)
        if not (body.startswith("{") and body.endswith("}")):
            return None
        call = _call_from_mapping(_loads(body), self.format, require_arguments=True)
        if call is None:
            return None
        return ParseResult(text="", calls=[call], format=self.format)


class TaggedStrategy(ParseStrategy):
    """
    <tool_call>...</tool_call> 标签块

    未闭合的标签依次尝试：
    (a) JSON 结束边界启发式：某个 `}` 后紧跟换行、文本结尾或下一个标签，且前缀可解析
    (b) 增量提取第一个语法完整的 JSON 值（截断/流式输出）
    """

    format = ToolCallFormat.TAGGED
    tag_names: Sequence[str] = ("tool_call", "toolcall", "tool-call", "function_call")

    def __init__(self):
        names = "|".join(re.escape(t) for t in self.tag_names)
        self._open_re = re.compile(r"<(" + names + r")>", re.IGNORECASE)
        self._terminator_re = re.compile(r"\}[ \t]*(?=\r?\n|$|<)")

    def attempt(self, text: str) -> Optional[ParseResult]:
        calls: List[ParsedToolCall] = []
        parts: List[str] = []
        pos = 0

        while True:
            opening = self._open_re.search(text, pos)
            if not opening:
                break
            next_open = self._open_re.search(text, opening.end())
            close_re = re.compile(r"</" + re.escape(opening.group(1)) + r">", re.IGNORECASE)
            closing = close_re.search(text, opening.end())

            if closing and (next_open is None or closing.start() < next_open.start()):
                found = _parse_call_body(text[opening.end():closing.start()], self.format)
                if found:
                    calls.extend(found)
                    parts.append(text[pos:opening.start()])
                else:
                    # 无法解析的块原样保留
                    parts.append(text[pos:closing.end()])
                pos = closing.end()
                continue

            limit = next_open.start() if next_open else len(text)
            recovered = self._recover_unterminated(text, opening.end(), limit)
            if recovered:
                found, end = recovered
                calls.extend(found)
                parts.append(text[pos:opening.start()])
                pos = end
            else:
                parts.append(text[pos:opening.end()])
                pos = opening.end()

        if not calls:
            return None
        parts.append(text[pos:])
        return ParseResult(text=_join(parts), calls=calls, format=self.format)

    def _recover_unterminated(
        self,
        text: str,
        start: int,
        limit: int
    ) -> Optional[Tuple[List[ParsedToolCall], int]]:
        brace = text.find("{", start, limit)
        if brace < 0:
            return None
        prefix = text[start:brace].strip()
        name = None
        if prefix:
            if not _IDENT_RE.fullmatch(prefix):
                return None
            name = prefix

        # (a) 边界启发式
        for terminator in self._terminator_re.finditer(text, brace, limit):
            end = terminator.start() + 1
            value = _loads(text[brace:end], _MISSING)
            if value is _MISSING:
                continue
            found = self._build(value, name)
            if found:
                logger.debug("Recovered unterminated tool call via terminator boundary")
                return found, end
            break

        # (b) 增量提取
        try:
            value, end = _DECODER.raw_decode(text, brace)
        except ValueError:
            return None
        if end > limit:
            return None
        found = self._build(value, name)
        if not found:
            return None
        logger.debug("Recovered unterminated tool call via incremental JSON extraction")
        return found, end

    def _build(self, value: Any, name: Optional[str]) -> List[ParsedToolCall]:
        if name is None:
            return _calls_from_value(value, self.format)
        if isinstance(value, dict):
            return [ParsedToolCall(name=name, arguments=value, format=self.format)]
        return []


class FencedStrategy(ParseStrategy):
    """```tool_call 代码围栏"""

    format = ToolCallFormat.FENCED
    labels: Sequence[str] = ("tool_call", "tool-call", "toolcall", "function_call", "tool")

    def __init__(self):
        labels = "|".join(re.escape(label) for label in self.labels)
        self._fence_re = re.compile(
            r"```[ \t]*(?:" + labels + r")[ \t]*\r?\n(.*?)```",
            re.DOTALL | re.IGNORECASE
        )

    def attempt(self, text: str) -> Optional[ParseResult]:
        calls: List[ParsedToolCall] = []
        parts: List[str] = []
        pos = 0
        for match in self._fence_re.finditer(text):
            found = _parse_call_body(match.group(1), self.format)
            if not found:
                continue
            calls.extend(found)
            parts.append(text[pos:match.start()])
            pos = match.end()
        if not calls:
            return None
        parts.append(text[pos:])
        return ParseResult(text=_join(parts), calls=calls, format=self.format)


class VendorStrategy(ParseStrategy):
    """
    厂商专用格式：
    - <minimax:tool_call><invoke name="x"><parameter name="k">v</parameter></invoke></minimax:tool_call>
    - <|tool_call_begin|>functions.x:0<|tool_call_argument_begin|>{...}<|tool_call_end|>
    - [TOOL_CALLS][{"name": ..., "arguments": ...}]
    """

    format = ToolCallFormat.VENDOR

    _minimax_re = re.compile(r"<minimax:tool_call>(.*?)</minimax:tool_call>", re.DOTALL | re.IGNORECASE)
    _invoke_re = re.compile(r"<invoke\s+name=[\"']([^\"']+)[\"']\s*>(.*?)</invoke>", re.DOTALL)
    _parameter_re = re.compile(
        r"<parameter\s+name=[\"']([^\"']+)[\"']([^>]*)>(.*?)</parameter>", re.DOTALL
    )
    _string_attr_re = re.compile(r"\bstring=[\"'](true|false)[\"']", re.IGNORECASE)
    _sigil_re = re.compile(
        r"<\|tool_call_begin\|>\s*(.*?)\s*<\|tool_call_argument_begin\|>\s*(.*?)\s*<\|tool_call_end\|>",
        re.DOTALL
    )
    _section_re = re.compile(r"<\|tool_calls_section_(?:begin|end)\|>")
    _mistral_re = re.compile(r"\[TOOL_CALLS\]\s*")

    def attempt(self, text: str) -> Optional[ParseResult]:
        spans: List[Tuple[int, int, List[ParsedToolCall]]] = []
        spans.extend(self._minimax(text))
        spans.extend(self._sigils(text))
        spans.extend(self._mistral(text))
        if not spans:
            return None

        spans.sort(key=lambda span: span[0])
        calls: List[ParsedToolCall] = []
        parts: List[str] = []
        pos = 0
        for start, end, found in spans:
            if start < pos:
                continue
            parts.append(text[pos:start])
            calls.extend(found)
            pos = end
        parts.append(text[pos:])
        remaining = self._section_re.sub("", "".join(parts))
        return ParseResult(text=_join([remaining]), calls=calls, format=self.format)

    def _minimax(self, text: str):
        for block in self._minimax_re.finditer(text):
            found = []
            for invoke in self._invoke_re.finditer(block.group(1)):
                arguments = {
                    param.group(1).strip(): _json_or_text(param.group(3), self._string_hint(param.group(2)))
                    for param in self._parameter_re.finditer(invoke.group(2))
                }
                found.append(ParsedToolCall(
                    name=invoke.group(1).strip(),
                    arguments=arguments,
                    format=self.format
                ))
            if found:
                yield block.start(), block.end(), found

    @classmethod
    def _string_hint(cls, attributes: str) -> Optional[bool]:
        match = cls._string_attr_re.search(attributes)
        if match is None:
            return None
        return match.group(1).lower() == "true"

    def _sigils(self, text: str):
        for match in self._sigil_re.finditer(text):
            name = self._normalize_name(match.group(1))
            arguments = _decode_arguments(match.group(2))
            if not name or arguments is None:
                continue
            call = ParsedToolCall(name=name, arguments=arguments, format=self.format)
            yield match.start(), match.end(), [call]

    def _mistral(self, text: str):
        for marker in self._mistral_re.finditer(text):
            try:
                value, end = _DECODER.raw_decode(text, marker.end())
            except ValueError:
                continue
            found = _calls_from_value(value, self.format)
            if found:
                yield marker.start(), end, found

    @staticmethod
    def _normalize_name(raw: str) -> str:
        name = raw.strip()
        if name.startswith("functions."):
            name = name[len("functions."):]
        return re.sub(r":\d+$", "", name)


class EnvelopeStrategy(ParseStrategy):
    """{"tool_calls": [...]} 信封或顶层调用数组"""

    format = ToolCallFormat.ENVELOPE

    def attempt(self, text: str) -> Optional[ParseResult]:
        value = _loads(_strip_json_fence(text))
        remaining = ""
        if isinstance(value, dict) and isinstance(value.get("tool_calls"), list):
            items = value["tool_calls"]
            if isinstance(value.get("content"), str):
                remaining = value["content"].strip()
        elif isinstance(value, list) and value:
            items = value
        else:
            return None

        calls = [c for c in (_call_from_mapping(item, self.format) for item in items) if c]
        if not calls:
            return None
        return ParseResult(text=remaining, calls=calls, format=self.format)


class AliasStrategy(ParseStrategy):
    """部分网关使用的替代/混合键名"""

    format = ToolCallFormat.ALIAS
    name_keys: Sequence[str] = ("tool", "tool_name", "function", "function_name", "action", "name")
    argument_keys: Sequence[str] = (
        "arguments", "parameters", "args", "input", "tool_input", "action_input", "params"
    )
    final_answer_actions = frozenset({"final answer", "final_answer"})

    def attempt(self, text: str) -> Optional[ParseResult]:
        value = _loads(_strip_json_fence(text))
        items = value if isinstance(value, list) else [value]
        calls = []
        for item in items:
            call = self._alias_call(item)
            if call is None:
                return None
            calls.append(call)
        if not calls:
            return None
        return ParseResult(text="", calls=calls, format=self.format)

    def _alias_call(self, item: Any) -> Optional[ParsedToolCall]:
        if not isinstance(item, dict):
            return None
        name = next(
            (item[key].strip() for key in self.name_keys
             if isinstance(item.get(key), str) and item[key].strip()),
            None
        )
        if name is None or name.lower() in self.final_answer_actions:
            return None
        raw = next((item[key] for key in self.argument_keys if key in item), _MISSING)
        if raw is _MISSING:
            return None
        arguments = _decode_arguments(raw)
        if arguments is None:
            if not isinstance(raw, str):
                return None
            arguments = {"input": raw}
        return ParsedToolCall(name=name, arguments=arguments, format=self.format)


class ResultTagStrategy(ParseStrategy):
    """模型自己写出的 <tool_result> 块：清理掉，不执行"""

    format = ToolCallFormat.RESULT_TAG

    _result_re = re.compile(
        r"<(tool_result|tool_response|function_results)\b[^>]*>.*?</\1>",
        re.DOTALL | re.IGNORECASE
    )

    def attempt(self, text: str) -> Optional[ParseResult]:
        if not self._result_re.search(text):
            return None
        return ParseResult(text=_join([self._result_re.sub("", text)]), format=self.format)


DEFAULT_STRATEGIES = (
    JsonObjectStrategy,
    TaggedStrategy,
    FencedStrategy,
    VendorStrategy,
    EnvelopeStrategy,
    AliasStrategy,
    ResultTagStrategy,
)


class ToolCallParser:
    """按优先级依次尝试各策略；从不抛异常，无法识别时原样返回文本"""

    def __init__(self, strategies: Optional[Sequence[ParseStrategy]] = None):
        if strategies is None:
            strategies = [cls() for cls in DEFAULT_STRATEGIES]
        self.strategies: List[ParseStrategy] = list(strategies)

    def parse(self, text: str) -> Tuple[str, List[ParsedToolCall]]:
        result = self.parse_detailed(text)
        return result.text, result.calls

    def parse_detailed(self, text: str) -> ParseResult:
        if not text or not text.strip():
            return ParseResult(text=text or "")

        for strategy in self.strategies:
            try:
                result = strategy.attempt(text)
            except Exception as e:
                logger.warning(f"Parse strategy '{strategy.name}' failed: {e}")
                continue
            if result is not None:
                logger.debug(
                    f"Parsed {len(result.calls)} tool call(s) with strategy '{strategy.name}'"
                )
                return result

        logger.debug("No tool-call encoding recognized; treating response as plain text")
        return ParseResult(text=text)
