"""pytest 配置"""

import asyncio
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from lspd.config import DaemonConfig, ServerConfig  # noqa: E402

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_lsp_server.py"


class FakeWriter:
    """模拟子进程 stdin，记录写入的字节"""

    def __init__(self):
        self.data = bytearray()
        self.fail_with: Exception | None = None
        self._closing = False

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.data.extend(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        self._closing = True

    def messages(self) -> list[dict]:
        from lspd.codec import FrameDecoder

        return FrameDecoder().feed(bytes(self.data))


@pytest.fixture
def fake_writer():
    return FakeWriter()


@pytest.fixture
def workspace_dir(tmp_path):
    """创建临时工作目录"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return str(workspace)


@pytest.fixture
def socket_dir():
    """Unix 套接字路径有长度限制，使用 /tmp 下的短目录"""
    path = tempfile.mkdtemp(prefix="lspd-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fake_server_config():
    """启动测试用语言服务器的配置"""
    return ServerConfig(command=sys.executable, args=[str(FAKE_SERVER)])


@pytest.fixture
def daemon_config(workspace_dir, socket_dir, fake_server_config):
    return DaemonConfig(
        root=workspace_dir,
        server=fake_server_config,
        socket_dir=socket_dir,
        info_path=str(Path(socket_dir) / "info.json"),
        diagnostics_timeout=2.0,
        initialize_timeout=10.0,
        shutdown_grace=1.0,
        client_timeout=5.0,
    )


@pytest.fixture
def sample_ts_file(workspace_dir):
    """包含一个类型错误的 TypeScript 文件"""
    file_path = Path(workspace_dir) / "a.ts"
    file_path.write_text('const x: number = "bad";\n', encoding="utf-8")
    return str(file_path)
