"""
日志工具模块
提供统一的日志格式化和管理。

注意：本模块的 Logger 仅接受单参数字符串（与标准库 logging 多参数形式不同）。
请统一使用 f-string 传参，例如：logger.info(f"msg: {x}")，
不要使用 logger.info("msg %s", x) 或 logger.info("msg", x)。
"""
import logging
import sys
from datetime import datetime
from pathlib import Path

MAIN_LOGGER_NAME = "LineBridge"
GATEWAY_LOGGER_NAME = "LineBridge.Gateway"

# 与管理界面 log_level 选项一致（critical/error/warning/info/debug）
LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def parse_level(level_name) -> int:
    """将 log_level 文本转为 logging 等级；无法识别时返回 INFO。"""
    return LEVEL_MAP.get((level_name or "").strip().upper(), logging.INFO)


class Logger:
    """日志管理器"""

    _instance = None
    _logger = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._logger is None:
            self._setup_logger()

    def _setup_logger(self):
        """设置日志器：导入时只挂控制台处理器，文件处理器由 configure() 按需添加。"""
        self._logger = logging.getLogger(MAIN_LOGGER_NAME)
        self._logger.setLevel(logging.INFO)
        self._formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        self._file_handlers: list[logging.Handler] = []

        # 避免重复添加处理器
        if self._logger.handlers:
            return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(self._formatter)
        self._logger.addHandler(console_handler)

        # Gateway 专用 logger：控制台可见，不向父 logger 传播，避免与主日志重复
        gw = logging.getLogger(GATEWAY_LOGGER_NAME)
        gw.setLevel(logging.INFO)
        if not gw.handlers:
            gw.addHandler(console_handler)
        gw.propagate = False

    def configure(self, log_dir: str = "logs", level_name: str = "info") -> None:
        """
        添加按日期命名的文件日志并设置等级。
        主日志写入 bridge_YYYYMMDD.log，Gateway 日志写入 gateway.YYYYMMDD.log。
        目录无法创建时仅保留控制台输出。
        """
        gw = logging.getLogger(GATEWAY_LOGGER_NAME)
        for h in self._file_handlers:
            self._logger.removeHandler(h)
            gw.removeHandler(h)
            h.close()
        self._file_handlers = []
        try:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d")
            main_file = logging.FileHandler(path / f"bridge_{stamp}.log", encoding="utf-8")
            gateway_file = logging.FileHandler(path / f"gateway.{stamp}.log", encoding="utf-8")
        except OSError as e:
            self._logger.warning(f"日志目录不可用，仅输出到控制台: {e}")
        else:
            main_file.setFormatter(self._formatter)
            gateway_file.setFormatter(self._formatter)
            self._logger.addHandler(main_file)
            gw.addHandler(gateway_file)
            self._file_handlers = [main_file, gateway_file]
        self.set_level(level_name)

    def set_level(self, level_name: str):
        """根据配置的 log_level 设置主 logger 与 Gateway logger 等级。level_name: critical/error/warning/info/debug。"""
        level = parse_level(level_name)
        self._logger.setLevel(level)
        for h in self._logger.handlers:
            h.setLevel(level)
        # Gateway 子 logger 同步
        gw = logging.getLogger(GATEWAY_LOGGER_NAME)
        gw.setLevel(level)
        for h in gw.handlers:
            h.setLevel(level)

    def debug(self, message):
        """调试日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.debug(message)

    def info(self, message):
        """信息日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.info(message)

    def warning(self, message):
        """警告日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.warning(message)

    def error(self, message):
        """错误日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.error(message)

    def critical(self, message):
        """严重错误日志。message 须为单参字符串，建议使用 f-string。"""
        self._logger.critical(message)

    def exception(self, message):
        """异常日志（带堆栈）。message 须为单参字符串，建议使用 f-string。"""
        self._logger.exception(message)

# 全局日志实例
logger = Logger()
# Gateway 专用 logger，不 propagate 到主 log
gateway_logger = logging.getLogger(GATEWAY_LOGGER_NAME)
