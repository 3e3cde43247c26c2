"""
OpenClaw LINE Bridge 主程序 - 本地 HTTP 入口 + OpenClaw Gateway WebSocket 客户端

用法: python main.py [--port 5001] [--gateway ws://127.0.0.1:18789]
"""
import argparse
import os
import sys

ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, ROOT)

from aiohttp import web

from utils.logger import logger
from config.settings import Settings
from core.line_bridge import CommandRouter, SessionKeyring, create_app
from core.openclaw_gateway import DeviceIdentity, GatewayClient, GatewayError
from core.openclaw_gateway.protocol import platform_name


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openclaw-line-bridge",
        description="把 LINE webhook 转发的消息交给 OpenClaw Gateway agent 处理",
    )
    parser.add_argument("--port", type=int, default=None, help="HTTP 监听端口（默认 5001）")
    parser.add_argument("--host", default=None, help="HTTP 监听地址（默认 0.0.0.0）")
    parser.add_argument("--gateway", default=None, help="Gateway WebSocket 地址（默认 ws://127.0.0.1:18789）")
    parser.add_argument("--config", default=None, help="配置文件路径（默认 config/bridge.json）")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=None,
        choices=["critical", "error", "warning", "info", "debug"],
        help="日志等级",
    )
    return parser


def build_gateway_client(settings: Settings) -> GatewayClient:
    """token 已配置时走 token 认证；否则加载（或生成）设备密钥走签名认证。启动后不再切换。"""
    token = settings.get("gateway_token") or ""
    identity = None
    if token:
        logger.info("Gateway 认证方式: token")
    else:
        key_path = settings.resolve_path(settings.get("device_key_path"))
        identity = DeviceIdentity.load_or_create(key_path)
        logger.info(f"Gateway 认证方式: 设备签名 deviceId={identity.device_id}")
    return GatewayClient(
        settings.get("gateway_url"),
        token=token,
        identity=identity,
        request_timeout=settings.get("request_timeout"),
        handshake_timeout=settings.get("handshake_timeout"),
    )


def build_application(settings: Settings) -> web.Application:
    """组装 Gateway 客户端、会话 key、命令路由与 HTTP 应用，并挂载启动/退出钩子。"""
    gateway_client = build_gateway_client(settings)
    router = CommandRouter(gateway_client, SessionKeyring())
    app = create_app(router)

    def _on_gateway_shutdown(payload: dict):
        restart_ms = int((payload or {}).get("restartExpectedMs") or 0)
        logger.warning(f"Gateway 即将重启，预计 {restart_ms // 1000}s 后恢复")

    gateway_client.on_event("shutdown", _on_gateway_shutdown)

    async def _on_startup(app):
        # 预连接失败只告警，首条消息到来时会再次尝试
        try:
            await gateway_client.connect()
            logger.info(f"已连接 Gateway: {settings.get('gateway_url')}")
        except GatewayError as e:
            logger.warning(f"启动时连接 Gateway 失败，将在收到消息时重试: {e}")

    async def _on_cleanup(app):
        logger.info("正在关闭 Gateway 连接...")
        await gateway_client.close()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def main(argv=None):
    """主函数"""
    args = build_arg_parser().parse_args(argv)
    settings = Settings(config_file=args.config)
    settings.apply_args(args)
    logger.configure(os.path.join(ROOT, settings.get("log_dir")), settings.get("log_level"))

    logger.info(f"{'=' * 50}")
    logger.info("OpenClaw LINE Bridge 启动")
    logger.info(f"当前平台: {platform_name()}")
    logger.info(f"{'=' * 50}")
    logger.info(f"配置加载完成: {settings.summary()}")

    try:
        app = build_application(settings)
        host = settings.get("bridge_host")
        port = settings.get("bridge_port")
        logger.info(f"HTTP 入口监听 http://{host}:{port}/message")
        web.run_app(app, host=host, port=port, print=None)
    except KeyboardInterrupt:
        logger.info("用户中断程序")
    except Exception as e:
        logger.exception(f"程序运行出错: {e}")
        return 1
    finally:
        logger.info("程序退出")
    return 0


if __name__ == "__main__":
    sys.exit(main())
