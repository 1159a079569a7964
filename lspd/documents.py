"""文档状态

记录每个 URI 的打开状态和版本号，决定发送 didOpen 还是 didChange。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from .protocol import (
    DidChangeTextDocumentParams,
    DidOpenTextDocumentParams,
    DocumentUri,
    TextDocumentItem,
    VersionedTextDocumentIdentifier,
    detect_language_id,
)


def path_to_uri(path: str | Path) -> DocumentUri:
    """文件路径转为 file:// URI"""
    return Path(path).absolute().as_uri()


def uri_key(uri: DocumentUri) -> str:
    """URI 比较键，服务器回传的 URI 可能使用不同的百分号编码"""
    return unquote(uri)


class DocumentAction(Enum):
    """需要发送的同步通知"""

    OPEN = "textDocument/didOpen"
    CHANGE = "textDocument/didChange"


@dataclass
class Document:
    """已打开的文档"""

    uri: DocumentUri
    languageId: str
    version: int
    content: str


@dataclass
class DocumentUpdate:
    """open_or_update 的结果"""

    uri: DocumentUri
    language_id: str
    version: int
    action: DocumentAction
    content: str

    @property
    def method(self) -> str:
        return self.action.value

    def to_params(self) -> dict:
        """对应 LSP 通知的参数"""
        if self.action is DocumentAction.OPEN:
            return DidOpenTextDocumentParams(
                textDocument=TextDocumentItem(
                    uri=self.uri,
                    languageId=self.language_id,
                    version=self.version,
                    text=self.content,
                )
            ).to_dict()

        return DidChangeTextDocumentParams(
            textDocument=VersionedTextDocumentIdentifier(uri=self.uri, version=self.version),
            contentChanges=[{"text": self.content}],
        ).to_dict()


class DocumentStore:
    """文档存储，版本号按 URI 从 1 开始单调递增"""

    def __init__(self):
        self._documents: dict[str, Document] = {}

    def open_or_update(self, path: str | Path, content: str) -> DocumentUpdate:
        uri = path_to_uri(path)
        key = uri_key(uri)
        document = self._documents.get(key)

        if document is None:
            document = Document(
                uri=uri,
                languageId=detect_language_id(str(path)),
                version=1,
                content=content,
            )
            self._documents[key] = document
            action = DocumentAction.OPEN
        else:
            document.version += 1
            document.content = content
            action = DocumentAction.CHANGE

        return DocumentUpdate(
            uri=document.uri,
            language_id=document.languageId,
            version=document.version,
            action=action,
            content=content,
        )

    def get(self, uri: DocumentUri) -> Optional[Document]:
        return self._documents.get(uri_key(uri))

    def version_of(self, path: str | Path) -> Optional[int]:
        document = self.get(path_to_uri(path))
        return document.version if document else None

    def __contains__(self, uri: DocumentUri) -> bool:
        return uri_key(uri) in self._documents

    def __len__(self) -> int:
        return len(self._documents)
