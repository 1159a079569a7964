"""LSP 协议类型定义

基于 LSP 3.17 规范，只保留诊断守护进程需要的类型。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Union

# 基础类型
DocumentUri = str


@dataclass
class Position:
    """文档中的位置"""

    line: int  # 0-indexed
    character: int  # 0-indexed

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        return cls(line=data["line"], character=data["character"])


@dataclass
class Range:
    """文档中的范围"""

    start: Position
    end: Position

    @classmethod
    def from_dict(cls, data: dict) -> "Range":
        return cls(
            start=Position.from_dict(data["start"]),
            end=Position.from_dict(data["end"]),
        )

    def contains(self, position: Position) -> bool:
        """位置是否落在范围内 (含两端)"""
        start = (self.start.line, self.start.character)
        end = (self.end.line, self.end.character)
        return start <= (position.line, position.character) <= end


@dataclass
class TextDocumentIdentifier:
    """文档标识符"""

    uri: DocumentUri

    def to_dict(self) -> dict:
        return {"uri": self.uri}


@dataclass
class VersionedTextDocumentIdentifier(TextDocumentIdentifier):
    """带版本的文档标识符"""

    version: int

    def to_dict(self) -> dict:
        return {"uri": self.uri, "version": self.version}


@dataclass
class TextDocumentItem:
    """文档项"""

    uri: DocumentUri
    languageId: str
    version: int
    text: str

    def to_dict(self) -> dict:
        return {
            "uri": self.uri,
            "languageId": self.languageId,
            "version": self.version,
            "text": self.text,
        }


class DiagnosticSeverity(IntEnum):
    """诊断严重程度"""

    Error = 1
    Warning = 2
    Information = 3
    Hint = 4


@dataclass
class Diagnostic:
    """诊断信息"""

    range: Range
    message: str
    severity: Optional[DiagnosticSeverity] = None
    code: Optional[Union[int, str]] = None
    source: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Diagnostic":
        severity = None
        if data.get("severity") is not None:
            severity = DiagnosticSeverity(data["severity"])

        return cls(
            range=Range.from_dict(data["range"]),
            message=data["message"],
            severity=severity,
            code=data.get("code"),
            source=data.get("source"),
        )

    @property
    def severity_str(self) -> str:
        """获取严重程度字符串"""
        if self.severity is None:
            return "unknown"
        return {
            DiagnosticSeverity.Error: "error",
            DiagnosticSeverity.Warning: "warning",
            DiagnosticSeverity.Information: "info",
            DiagnosticSeverity.Hint: "hint",
        }.get(self.severity, "unknown")

    @property
    def is_significant(self) -> bool:
        """错误或警告"""
        return self.severity is not None and self.severity <= DiagnosticSeverity.Warning

    def format(self, file_name: str, code_prefix: str = "") -> str:
        """格式化为 `name:line:col - severity [code]: message`"""
        line = self.range.start.line + 1  # 转为 1-indexed
        col = self.range.start.character + 1
        code = f" [{code_prefix}{self.code}]" if self.code is not None else ""
        return f"{file_name}:{line}:{col} - {self.severity_str}{code}: {self.message}"


# LSP 请求/通知参数


@dataclass
class InitializeParams:
    """初始化参数"""

    processId: Optional[int]
    rootUri: Optional[DocumentUri]
    rootPath: Optional[str] = None
    capabilities: dict = field(default_factory=dict)
    workspaceFolders: Optional[list[dict]] = None

    def to_dict(self) -> dict:
        result = {
            "processId": self.processId,
            "rootUri": self.rootUri,
            "capabilities": self.capabilities,
        }
        if self.rootPath:
            result["rootPath"] = self.rootPath
        if self.workspaceFolders:
            result["workspaceFolders"] = self.workspaceFolders
        return result


@dataclass
class InitializeResult:
    """初始化结果"""

    capabilities: dict

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "InitializeResult":
        return cls(capabilities=(data or {}).get("capabilities", {}))


@dataclass
class DidOpenTextDocumentParams:
    """打开文档参数"""

    textDocument: TextDocumentItem

    def to_dict(self) -> dict:
        return {"textDocument": self.textDocument.to_dict()}


@dataclass
class DidChangeTextDocumentParams:
    """文档变更参数 (全量同步)"""

    textDocument: VersionedTextDocumentIdentifier
    contentChanges: list[dict]

    def to_dict(self) -> dict:
        return {
            "textDocument": self.textDocument.to_dict(),
            "contentChanges": self.contentChanges,
        }


@dataclass
class PublishDiagnosticsParams:
    """发布诊断参数

    diagnostics 保留服务器发来的原始对象，原样转发给套接字客户端。
    """

    uri: DocumentUri
    diagnostics: list[dict]
    version: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "PublishDiagnosticsParams":
        diagnostics = data.get("diagnostics") or []
        if not isinstance(diagnostics, list):
            raise ValueError("diagnostics 必须是数组")
        version = data.get("version")
        return cls(
            uri=data["uri"],
            diagnostics=diagnostics,
            version=version if isinstance(version, int) else None,
        )


CLIENT_CAPABILITIES = {
    "textDocument": {
        "synchronization": {
            "dynamicRegistration": False,
            "willSave": False,
            "didSave": True,
        },
        "publishDiagnostics": {
            "relatedInformation": True,
            "versionSupport": True,
        },
    },
    "workspace": {
        "workspaceFolders": True,
        "configuration": True,
    },
}


# 语言 ID 映射
LANGUAGE_ID_MAP = {
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascriptreact",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".h": "c",
    ".hpp": "cpp",
    ".json": "json",
    ".md": "markdown",
}


def detect_language_id(file_path: str) -> str:
    """根据文件扩展名检测语言 ID"""
    ext = os.path.splitext(file_path)[1].lower()
    return LANGUAGE_ID_MAP.get(ext, "plaintext")
