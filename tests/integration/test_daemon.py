"""守护进程集成测试

使用 tests/fixtures/fake_lsp_server.py 作为语言服务器子进程。
"""

import asyncio
import json
import os
import signal
from dataclasses import replace
from pathlib import Path

import pytest
import pytest_asyncio

from lspd.client import DaemonClient
from lspd.config import ServerConfig
from lspd.daemon import Daemon
from lspd.discovery import DaemonInfo
from lspd.errors import DaemonCommandError, ServerStartError
from lspd.protocol import Diagnostic, Position
from lspd.supervisor import LanguageServerSupervisor, ServerState


def with_mode(config, mode: str, **env):
    """复制配置并设置测试服务器行为"""
    server = replace(config.server, env={**config.server.env, "FAKE_LSP_MODE": mode, **env})
    return replace(config, server=server)


async def call(socket_path: str, method: str, *args):
    """在线程中调用阻塞客户端，避免阻塞事件循环"""
    client = DaemonClient(socket_path, timeout=5.0)
    return await asyncio.to_thread(getattr(client, method), *args)


def read_log(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


async def wait_for_info(info_path: Path) -> DaemonInfo:
    for _ in range(200):
        info = DaemonInfo.load(info_path)
        if info is not None:
            return info
        await asyncio.sleep(0.05)
    raise AssertionError(f"守护进程未发布 {info_path}")


@pytest_asyncio.fixture
async def running_daemon(daemon_config):
    daemon = Daemon(daemon_config)
    await daemon.start()
    yield daemon
    await daemon.shutdown()


class TestSupervisor:
    """LanguageServerSupervisor 测试"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, fake_server_config, workspace_dir, tmp_path):
        """测试握手和正常关闭"""
        log = tmp_path / "messages.jsonl"
        config = replace(fake_server_config, env={"FAKE_LSP_LOG": str(log)})
        supervisor = LanguageServerSupervisor(config, workspace_dir, initialize_timeout=10.0)

        channel = await supervisor.start()
        assert supervisor.is_ready
        assert supervisor.pid is not None
        assert supervisor.capabilities == {"textDocumentSync": 1}
        assert not channel.is_closed

        await supervisor.stop()
        assert supervisor.state is ServerState.STOPPED
        assert channel.is_closed
        assert await supervisor.wait_exited() == 0

        methods = [m.get("method") for m in read_log(log)]
        assert methods == ["initialize", "initialized", "shutdown", "exit"]
        initialize = read_log(log)[0]["params"]
        assert initialize["rootUri"] == Path(workspace_dir).as_uri()
        assert initialize["capabilities"]["textDocument"]["publishDiagnostics"]["versionSupport"] is True

    @pytest.mark.asyncio
    async def test_missing_command(self, workspace_dir):
        supervisor = LanguageServerSupervisor(
            ServerConfig(command="/nonexistent/lsp-server-binary"), workspace_dir
        )
        with pytest.raises(ServerStartError):
            await supervisor.start()
        assert supervisor.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_initialize_error(self, fake_server_config, workspace_dir):
        config = replace(fake_server_config, env={"FAKE_LSP_MODE": "fail_init"})
        supervisor = LanguageServerSupervisor(config, workspace_dir, initialize_timeout=10.0)
        with pytest.raises(ServerStartError):
            await supervisor.start()
        assert supervisor.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_stubborn_server_terminated(self, fake_server_config, workspace_dir):
        """测试不响应 shutdown 的服务器在宽限期后被终止"""
        config = replace(fake_server_config, env={"FAKE_LSP_MODE": "stubborn"})
        supervisor = LanguageServerSupervisor(config, workspace_dir, shutdown_grace=0.3)
        await supervisor.start()

        loop = asyncio.get_running_loop()
        started = loop.time()
        await supervisor.stop()
        assert loop.time() - started < 5.0
        assert supervisor.state is ServerState.STOPPED
        assert supervisor.returncode is not None

    @pytest.mark.asyncio
    async def test_unexpected_exit_calls_on_exit(self, fake_server_config, workspace_dir):
        exits = []
        supervisor = LanguageServerSupervisor(fake_server_config, workspace_dir, on_exit=exits.append)
        await supervisor.start()

        supervisor._process.kill()
        await asyncio.wait_for(supervisor.wait_exited(), timeout=5.0)

        assert supervisor.state is ServerState.STOPPED
        assert len(exits) == 1
        assert supervisor.channel.is_closed

        tasks = list(supervisor._tasks)
        await supervisor.stop()
        assert supervisor._tasks == []
        assert all(task.done() for task in tasks)


class TestDaemon:
    """Daemon 端到端测试"""

    @pytest.mark.asyncio
    async def test_ping_and_info_file(self, running_daemon, daemon_config):
        info = DaemonInfo.load(daemon_config.info_path)
        assert info == running_daemon.info
        assert info.socket_path == daemon_config.socket_path
        assert await call(info.socket_path, "ping") is True

    @pytest.mark.asyncio
    async def test_check_type_error(self, running_daemon, sample_ts_file):
        """测试类型错误返回非空诊断"""
        content = Path(sample_ts_file).read_text(encoding="utf-8")
        diagnostics = await call(running_daemon.info.socket_path, "check", sample_ts_file, content)

        assert len(diagnostics) == 1
        assert diagnostics[0]["code"] == 2322
        assert diagnostics[0]["severity"] == 1
        assert diagnostics[0]["range"]["start"] == {"line": 0, "character": 18}
        # 范围覆盖整个字符串字面量 "bad"
        diagnostic_range = Diagnostic.from_dict(diagnostics[0]).range
        assert diagnostic_range.contains(Position(0, content.index('"bad"')))
        assert not diagnostic_range.contains(Position(0, content.index("number")))

    @pytest.mark.asyncio
    async def test_clean_file(self, running_daemon, workspace_dir):
        path = str(Path(workspace_dir) / "ok.ts")
        diagnostics = await call(running_daemon.info.socket_path, "check", path, "const x: number = 1;\n")
        assert diagnostics == []

    @pytest.mark.asyncio
    async def test_repeated_check_bumps_version(self, running_daemon, sample_ts_file):
        """测试同一文件再次检查发送 didChange，版本加一，结果反映新内容"""
        socket_path = running_daemon.info.socket_path

        first = await call(socket_path, "check", sample_ts_file, 'const x: number = "bad";\n')
        second = await call(socket_path, "check", sample_ts_file, "const x: number = 1;\nlet y = ;\n")

        assert running_daemon.store.version_of(sample_ts_file) == 2
        assert first[0]["code"] == 2322
        assert [d["code"] for d in second] == [1109]

    @pytest.mark.asyncio
    async def test_relative_path_resolved_against_root(self, running_daemon, sample_ts_file):
        diagnostics = await call(running_daemon.info.socket_path, "check", "a.ts", 'const x: number = "";')
        assert diagnostics[0]["code"] == 2322
        assert running_daemon.store.version_of(sample_ts_file) == 1

    @pytest.mark.asyncio
    async def test_unknown_command_then_ping(self, running_daemon):
        """测试错误命令后守护进程仍可用"""
        client = DaemonClient(running_daemon.info.socket_path)
        with pytest.raises(DaemonCommandError) as exc_info:
            await asyncio.to_thread(client.request, {"type": "bogus"})
        assert exc_info.value.code == "unknown_command"
        assert await asyncio.to_thread(client.ping) is True

    @pytest.mark.asyncio
    async def test_status(self, running_daemon, daemon_config):
        status = await call(running_daemon.info.socket_path, "status")
        assert status["ok"] is True
        assert status["state"] == "ready"
        assert status["root"] == daemon_config.root
        assert status["serverPid"] == running_daemon.supervisor.pid

    @pytest.mark.asyncio
    async def test_shutdown_unpublishes(self, daemon_config):
        daemon = Daemon(daemon_config)
        info = await daemon.start()
        await daemon.shutdown()

        assert not Path(daemon_config.info_path).exists()
        assert not Path(info.socket_path).exists()
        assert daemon.supervisor.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_shutdown_keeps_foreign_info_file(self, daemon_config):
        """测试不删除被其他实例覆盖的发现文件"""
        daemon = Daemon(daemon_config)
        await daemon.start()
        DaemonInfo(socket_path="/tmp/other.sock", pid=1).write_atomic(daemon_config.info_path)

        await daemon.shutdown()
        assert DaemonInfo.load(daemon_config.info_path).pid == 1


class TestDaemonServerModes:
    """语言服务器异常行为"""

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self, daemon_config, sample_ts_file):
        """测试服务器不发布诊断时超时返回空数组"""
        config = replace(with_mode(daemon_config, "silent"), diagnostics_timeout=0.3)
        daemon = Daemon(config)
        await daemon.start()
        try:
            loop = asyncio.get_running_loop()
            started = loop.time()
            diagnostics = await call(daemon.info.socket_path, "check", sample_ts_file, "x")
            assert diagnostics == []
            assert loop.time() - started < 2.0
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_stale_publish_ignored(self, daemon_config, sample_ts_file):
        """测试旧版本诊断不作为当前结果返回"""
        daemon = Daemon(with_mode(daemon_config, "stale"))
        await daemon.start()
        try:
            socket_path = daemon.info.socket_path
            await call(socket_path, "check", sample_ts_file, "const x: number = 1;")
            diagnostics = await call(socket_path, "check", sample_ts_file, "const y: number = 2;")
            assert diagnostics == []
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_server_request_answered(self, daemon_config, sample_ts_file, tmp_path):
        """测试服务器主动请求得到应答且不影响诊断"""
        log = tmp_path / "messages.jsonl"
        daemon = Daemon(with_mode(daemon_config, "server_request", FAKE_LSP_LOG=str(log)))
        await daemon.start()
        try:
            diagnostics = await call(daemon.info.socket_path, "check", sample_ts_file, 'const x: number = "";')
            assert diagnostics[0]["code"] == 2322
        finally:
            await daemon.shutdown()

        responses = [m for m in read_log(log) if m.get("id") == "cfg-1"]
        assert responses == [{"jsonrpc": "2.0", "id": "cfg-1", "result": [None]}]

    @pytest.mark.asyncio
    async def test_server_crash_stops_daemon(self, daemon_config, sample_ts_file):
        """测试语言服务器退出后检查失败，守护进程退出码为 1 并清理文件"""
        daemon = Daemon(with_mode(daemon_config, "crash_on_change"))
        run_task = asyncio.create_task(daemon.run())

        info_path = Path(daemon_config.info_path)
        socket_path = (await wait_for_info(info_path)).socket_path

        assert await call(socket_path, "check", sample_ts_file, "a") == []
        with pytest.raises(DaemonCommandError) as exc_info:
            await call(socket_path, "check", sample_ts_file, "b")
        assert exc_info.value.code == "server_unavailable"

        assert await asyncio.wait_for(run_task, timeout=10.0) == 1
        assert not info_path.exists()
        assert not Path(socket_path).exists()

    @pytest.mark.asyncio
    async def test_shutdown_command_stops_run(self, daemon_config):
        daemon = Daemon(daemon_config)
        run_task = asyncio.create_task(daemon.run())

        info_path = Path(daemon_config.info_path)
        info = await wait_for_info(info_path)

        await call(info.socket_path, "shutdown")
        assert await asyncio.wait_for(run_task, timeout=10.0) == 0
        assert not info_path.exists()


class TestSignals:
    """信号处理测试"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "signum, graceful",
        [(signal.SIGTERM, True), (signal.SIGINT, False)],
    )
    async def test_signal_stops_and_cleans_up(self, daemon_config, tmp_path, signum, graceful):
        """测试 SIGTERM 走 shutdown/exit，SIGINT 直接终止，两者都清理文件"""
        log = tmp_path / "messages.jsonl"
        daemon = Daemon(with_mode(daemon_config, "", FAKE_LSP_LOG=str(log)))
        run_task = asyncio.create_task(daemon.run())

        info_path = Path(daemon_config.info_path)
        info = await wait_for_info(info_path)
        os.kill(os.getpid(), signum)

        assert await asyncio.wait_for(run_task, timeout=10.0) == 0
        assert not info_path.exists()
        assert not Path(info.socket_path).exists()
        assert daemon.supervisor.state is ServerState.STOPPED

        methods = [m.get("method") for m in read_log(log)]
        if graceful:
            assert methods[-2:] == ["shutdown", "exit"]
        else:
            assert "shutdown" not in methods
            assert "exit" not in methods
