"""
lspd CLI 入口

    lspd serve ROOT      前台运行守护进程
    lspd start ROOT      后台启动并等待就绪
    lspd stop            停止守护进程
    lspd ping / status   健康检查
    lspd check FILE      诊断单个文件
    lspd hook            处理 PostToolUse 钩子输入 (stdin)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .client import DaemonClient, resolve_socket_path, start_daemon, stop_daemon
from .config import DaemonConfig, DEFAULT_INFO_PATH, client_timeout_from_env
from .daemon import Daemon
from .errors import ClientError, LSPDError
from .hooks import format_diagnostics, post_tool_use
from .protocol import DiagnosticSeverity

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """配置日志；守护进程写文件，其余命令写 stderr"""
    kwargs: dict = {"filename": log_file} if log_file else {"stream": sys.stderr}
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        **kwargs,
    )


def _info_path(args: argparse.Namespace) -> str:
    return args.info_path or os.environ.get("LSPD_INFO_PATH") or DEFAULT_INFO_PATH


def _client(args: argparse.Namespace) -> Optional[DaemonClient]:
    socket_path = args.socket or resolve_socket_path(_info_path(args))
    if not socket_path:
        return None
    return DaemonClient(socket_path, timeout=args.timeout or client_timeout_from_env())


def cmd_serve(args: argparse.Namespace, console: Console) -> int:
    config = DaemonConfig.load(args.root, args.config)
    if args.info_path:
        config.info_path = args.info_path
    setup_logging(args.log_level or config.log_level, args.log_file or config.log_file)

    try:
        return asyncio.run(Daemon(config).run())
    except LSPDError as e:
        logger.error(f"守护进程启动失败: {e}")
        return 1


def cmd_start(args: argparse.Namespace, console: Console) -> int:
    setup_logging(args.log_level or "WARNING")
    info = start_daemon(
        args.root,
        info_path=_info_path(args),
        config_path=args.config,
        wait=args.wait,
        log_file=args.log_file,
    )
    if info is None:
        console.print("[yellow]守护进程未就绪[/yellow]")
        return 1

    if args.env_file:
        with open(args.env_file, "a", encoding="utf-8") as f:
            f.write(f'export LSPD_SOCK="{info.socket_path}"\n')
            f.write(f'export LSPD_PID="{info.pid}"\n')

    console.print(f"[green]守护进程已就绪[/green] PID {info.pid} {info.socket_path}")
    return 0


def cmd_stop(args: argparse.Namespace, console: Console) -> int:
    setup_logging(args.log_level or "WARNING")
    if stop_daemon(_info_path(args)):
        console.print("[green]守护进程已停止[/green]")
    else:
        console.print("没有运行中的守护进程")
    return 0


def cmd_ping(args: argparse.Namespace, console: Console) -> int:
    client = _client(args)
    if client is None:
        console.print("[red]找不到守护进程[/red]")
        return 1
    try:
        ok = client.ping()
    except ClientError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    console.print("ok" if ok else "[red]异常响应[/red]")
    return 0 if ok else 1


def cmd_status(args: argparse.Namespace, console: Console) -> int:
    client = _client(args)
    if client is None:
        console.print("[red]找不到守护进程[/red]")
        return 1
    try:
        status = client.status()
    except ClientError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    table = Table(title="lspd", show_header=False)
    table.add_column("key", style="cyan")
    table.add_column("value")
    for key, value in status.items():
        if key != "ok":
            table.add_row(key, str(value))
    console.print(table)
    return 0


def cmd_check(args: argparse.Namespace, console: Console) -> int:
    client = _client(args)
    if client is None:
        console.print("[red]找不到守护进程[/red]")
        return 2

    file_path = str(Path(args.file).absolute())
    try:
        content = Path(file_path).read_text(encoding="utf-8")
        diagnostics = client.check(file_path, content)
    except OSError as e:
        console.print(f"[red]读取文件失败: {e}[/red]")
        return 2
    except ClientError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    if args.json:
        console.print_json(json.dumps(diagnostics))
    elif not diagnostics:
        console.print(f"[green]{args.file}: 没有发现问题[/green]")
    else:
        for line in format_diagnostics(file_path, diagnostics) or ["  (仅有提示信息)"]:
            console.print(line, markup=False, highlight=False)

    has_errors = any(d.get("severity") == DiagnosticSeverity.Error for d in diagnostics)
    return 1 if has_errors else 0


def cmd_hook(args: argparse.Namespace, console: Console) -> int:
    # 钩子任何失败都不能打断调用方
    try:
        payload = json.loads(sys.stdin.read() or "{}")
    except json.JSONDecodeError:
        return 0
    if not isinstance(payload, dict):
        return 0

    output = post_tool_use(
        payload,
        socket_path=args.socket,
        info_path=_info_path(args),
        timeout=args.timeout,
    )
    if output is not None:
        sys.stdout.write(json.dumps(output, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lspd",
        description="LSP 诊断守护进程",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  lspd start .                 # 后台启动
  lspd check src/app.ts        # 诊断文件
  lspd stop                    # 停止
        """,
    )
    parser.add_argument("--info-path", help=f"发现文件路径 (默认: {DEFAULT_INFO_PATH})")
    parser.add_argument("--socket", help="直接指定控制套接字")
    parser.add_argument("--timeout", type=float, help="客户端超时 (秒，默认为诊断等待加 1 秒)")
    parser.add_argument("--log-level", help="日志级别")
    parser.add_argument("-v", "--version", action="version", version=f"lspd {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="前台运行守护进程")
    serve.add_argument("root", help="项目根目录")
    serve.add_argument("--config", help="配置文件路径")
    serve.add_argument("--log-file", help="日志文件")
    serve.set_defaults(handler=cmd_serve)

    start = sub.add_parser("start", help="后台启动守护进程")
    start.add_argument("root", help="项目根目录")
    start.add_argument("--config", help="配置文件路径")
    start.add_argument("--log-file", help="守护进程日志文件")
    start.add_argument("--wait", type=float, default=5.0, help="等待就绪的秒数")
    start.add_argument("--env-file", help="追加 LSPD_SOCK/LSPD_PID 导出语句的文件")
    start.set_defaults(handler=cmd_start)

    stop = sub.add_parser("stop", help="停止守护进程")
    stop.set_defaults(handler=cmd_stop)

    ping = sub.add_parser("ping", help="健康检查")
    ping.set_defaults(handler=cmd_ping)

    status = sub.add_parser("status", help="守护进程状态")
    status.set_defaults(handler=cmd_status)

    check = sub.add_parser("check", help="诊断文件")
    check.add_argument("file", help="文件路径")
    check.add_argument("--json", action="store_true", help="输出原始 JSON")
    check.set_defaults(handler=cmd_check)

    hook = sub.add_parser("hook", help="PostToolUse 钩子 (从 stdin 读取输入)")
    hook.set_defaults(handler=cmd_hook)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """主入口"""
    args = build_parser().parse_args(argv)
    console = Console()
    try:
        return args.handler(args, console)
    except LSPDError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
