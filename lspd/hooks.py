"""钩子输出格式化

编辑 .ts/.tsx 文件后查询守护进程，把错误和警告整理成
PostToolUse 钩子的 additionalContext。守护进程不可用时静默。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .client import DaemonClient, resolve_socket_path
from .config import DEFAULT_INFO_PATH, client_timeout_from_env
from .errors import ClientError
from .protocol import Diagnostic

logger = logging.getLogger(__name__)

CHECKED_SUFFIXES = (".ts", ".tsx")


def should_check(file_path: str) -> bool:
    """只检查 .ts/.tsx，跳过声明文件"""
    return file_path.endswith(CHECKED_SUFFIXES) and not file_path.endswith(".d.ts")


def format_diagnostics(file_path: str, diagnostics: list[dict]) -> list[str]:
    """格式化错误和警告，每条一行"""
    name = Path(file_path).name
    lines = []
    for data in diagnostics:
        try:
            diagnostic = Diagnostic.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.debug(f"跳过无法解析的诊断: {data!r}")
            continue
        if diagnostic.is_significant:
            lines.append("  " + diagnostic.format(name, code_prefix="TS"))
    return lines


def post_tool_use(
    payload: dict,
    socket_path: Optional[str] = None,
    info_path: str = DEFAULT_INFO_PATH,
    timeout: Optional[float] = None,
) -> Optional[dict]:
    """处理 PostToolUse 钩子输入，没有需要报告的内容时返回 None

    timeout 缺省时比守护进程的诊断等待多留余量，见 client_timeout_from_env。
    """
    tool_input = payload.get("tool_input") or {}
    file_path = tool_input.get("file_path") if isinstance(tool_input, dict) else None
    if not isinstance(file_path, str) or not should_check(file_path):
        return None

    socket_path = socket_path or resolve_socket_path(info_path)
    if not socket_path:
        return None

    try:
        content = Path(file_path).read_text(encoding="utf-8")
    except OSError:
        return None

    try:
        client = DaemonClient(socket_path, timeout=timeout or client_timeout_from_env())
        diagnostics = client.check(file_path, content)
    except ClientError as e:
        logger.debug(f"查询守护进程失败: {e}")
        return None

    lines = format_diagnostics(file_path, diagnostics)
    if not lines:
        return None

    return {
        "hookSpecificOutput": {
            "hookEventName": "PostToolUse",
            "additionalContext": "TypeScript diagnostics after edit:\n" + "\n".join(lines),
        }
    }
