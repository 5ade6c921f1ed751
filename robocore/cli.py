"""
robocore 命令行界面

    robocore start -c config.yaml [--duration S] [--pid-file P]
    robocore stop --pid-file P
    robocore check -c config.yaml

退出码: 0 正常关闭；1 有节点未在 node_timeout_ms 内结束（或运行错误）；2 配置错误。
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from robocore.core import RoboCore
from robocore.errors import ConfigError
from robocore.system.services.config_center import load_config
from robocore.system.services.logger import setup_logging

EXIT_OK = 0
EXIT_UNCLEAN = 1
EXIT_CONFIG_ERROR = 2


class Colors:
    """终端颜色"""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"


def colorize(text: str, color: str) -> str:
    """给文本添加颜色"""
    if not sys.stdout.isatty():
        return text
    return f"{color}{text}{Colors.RESET}"


async def start_async(args: argparse.Namespace) -> int:
    """
    启动系统并阻塞到停止

    Returns:
        退出码
    """
    system = RoboCore(config_path=args.config)
    try:
        await system.initialize()
    except ConfigError as e:
        print(colorize(f"配置错误: {e}", Colors.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    pid_file = Path(args.pid_file) if args.pid_file else None
    if pid_file is not None:
        pid_file.write_text(str(os.getpid()))

    try:
        report = await system.run(duration=args.duration)
    finally:
        if pid_file is not None and pid_file.exists():
            pid_file.unlink()

    if not report.ok:
        print(colorize(f"以下节点未在宽限期内结束: {', '.join(report.unclean)}", Colors.YELLOW))
        return EXIT_UNCLEAN
    return EXIT_OK


def cmd_start(args: argparse.Namespace) -> int:
    setup_logging(level="DEBUG" if args.verbose else "INFO")
    try:
        return asyncio.run(start_async(args))
    except KeyboardInterrupt:
        return EXIT_UNCLEAN


def cmd_stop(args: argparse.Namespace) -> int:
    """向运行中的实例发送 SIGTERM"""
    pid_file = Path(args.pid_file)
    try:
        pid = int(pid_file.read_text().strip())
    except FileNotFoundError:
        print(colorize(f"PID 文件不存在: {pid_file}", Colors.RED), file=sys.stderr)
        return EXIT_UNCLEAN
    except ValueError:
        print(colorize(f"PID 文件内容无效: {pid_file}", Colors.RED), file=sys.stderr)
        return EXIT_UNCLEAN

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print(colorize(f"进程不存在: {pid}", Colors.RED), file=sys.stderr)
        return EXIT_UNCLEAN
    print(colorize(f"已发送停止信号: {pid}", Colors.CYAN))
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """校验配置文件"""
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(colorize(f"配置错误: {e}", Colors.RED), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    enabled = [key for key, node in config.nodes.items() if node.enabled]
    print(colorize(f"配置有效: {args.config}", Colors.GREEN))
    print(f"  系统名称: {config.system.name}")
    print(f"  节点上限: {config.system.max_nodes}")
    print(f"  启用节点: {len(enabled)}/{len(config.nodes)}")
    print(f"  话题配置: {len(config.topics)}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="robocore",
        description="robocore - 机器人节点运行时",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  %(prog)s start -c configs/system.yaml                 # 启动并运行到收到 SIGINT/SIGTERM
  %(prog)s start -c configs/system.yaml --duration 10   # 运行 10 秒后关闭
  %(prog)s stop --pid-file /tmp/robocore.pid            # 停止运行中的实例
  %(prog)s check -c configs/system.yaml                 # 校验配置文件
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="启动系统")
    start.add_argument("-c", "--config", required=True, help="配置文件路径")
    start.add_argument("--duration", type=float, default=None, metavar="S", help="运行时长（秒）")
    start.add_argument("--pid-file", default=None, metavar="P", help="写入进程 PID 的文件")
    start.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    start.set_defaults(func=cmd_start)

    stop = subparsers.add_parser("stop", help="停止运行中的实例")
    stop.add_argument("--pid-file", required=True, metavar="P", help="进程 PID 文件")
    stop.set_defaults(func=cmd_stop)

    check = subparsers.add_parser("check", help="校验配置文件")
    check.add_argument("-c", "--config", required=True, help="配置文件路径")
    check.set_defaults(func=cmd_check)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    主函数

    Returns:
        退出码
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
