"""告警引擎错误类型"""


class AlertEngineError(Exception):
    """告警引擎基础错误"""


class ConfigurationError(AlertEngineError):
    """配置错误：未知交易对、非法阈值或运算符"""


class CandleFetchError(AlertEngineError):
    """K 线数据获取失败"""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class LedgerError(AlertEngineError):
    """告警账本读写失败"""
