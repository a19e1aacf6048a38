# error_handling.py
"""
統一錯誤處理系統
為D3Q27 LBM模擬提供錯誤分類、日誌記錄與錯誤統計

錯誤類型:
- ConfigError: 設定缺漏或格式錯誤
- GeometryError: 幾何網格無法解析或無法分類節點
- InvalidRelaxationTime: 鬆弛時間 τ ≤ 0.5
- DeviceInitError: 無可用的並行計算裝置
- NumericalInstability: 單步中觸發數值回退的節點比例超過門檻
- SnapshotIOError: 快照序列化失敗

所有錯誤皆為致命錯誤，不做自動恢復；逐節點的數值保護在核心內自行修復。
"""

import time
import json
import logging
import traceback
from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """設置日志系統 (stream + 可選檔案輸出)"""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class ErrorSeverity(Enum):
    """錯誤嚴重程度"""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class ErrorCategory(Enum):
    """錯誤類別"""
    NUMERICAL = "numerical"
    GEOMETRY = "geometry"
    IO = "io"
    CONFIGURATION = "configuration"
    GPU = "gpu"


class CFDError(Exception):
    """CFD模擬基礎異常類"""
    def __init__(self, message: str, category: ErrorCategory,
                 severity: ErrorSeverity, context: Dict = None):
        super().__init__(message)
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.timestamp = time.time()


class ConfigError(CFDError):
    """設定參數缺漏或格式錯誤"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.FATAL, context)


class GeometryError(CFDError):
    """幾何載入或節點分類失敗"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.GEOMETRY, ErrorSeverity.FATAL, context)


class InvalidRelaxationTime(CFDError):
    """鬆弛時間落在不穩定區 (τ ≤ 0.5)"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.NUMERICAL, ErrorSeverity.FATAL, context)


class DeviceInitError(CFDError):
    """並行計算裝置初始化失敗"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.GPU, ErrorSeverity.FATAL, context)


class NumericalInstability(CFDError):
    """數值回退節點比例超過門檻"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.NUMERICAL, ErrorSeverity.CRITICAL, context)


class SnapshotIOError(CFDError):
    """快照序列化 / 寫檔失敗"""
    def __init__(self, message: str, context: Dict = None):
        super().__init__(message, ErrorCategory.IO, ErrorSeverity.ERROR, context)


@dataclass
class ErrorRecord:
    """錯誤記錄"""
    timestamp: float
    error_type: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    context: Dict
    stack_trace: str


class GlobalErrorHandler:
    """全局錯誤處理器 - 記錄並分級輸出所有CFD錯誤"""

    def __init__(self):
        self.error_count = 0
        self.error_log: List[ErrorRecord] = []

    def handle_error(self, error: CFDError, context: Dict = None) -> bool:
        """
        統一錯誤處理入口

        記錄錯誤並依嚴重程度輸出日誌。此系統中所有錯誤皆為致命錯誤，
        因此一律返回False，由呼叫端負責釋放資源並終止。
        """
        self.error_count += 1

        error_record = ErrorRecord(
            timestamp=time.time(),
            error_type=type(error).__name__,
            message=str(error),
            category=error.category,
            severity=error.severity,
            context={**(error.context or {}), **(context or {})},
            stack_trace=traceback.format_exc()
        )
        self.error_log.append(error_record)

        log_level = {
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.FATAL: logging.FATAL
        }[error.severity]

        logger.log(log_level, f"❌ {error.category.value.upper()} [{error_record.error_type}]: {error}")
        return False

    def get_error_statistics(self) -> Dict:
        """獲取錯誤統計信息"""
        if not self.error_log:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_log),
            "by_category": {},
            "by_severity": {},
            "recent_errors": []
        }

        for category in ErrorCategory:
            count = len([e for e in self.error_log if e.category == category])
            if count > 0:
                stats["by_category"][category.value] = count

        for severity in ErrorSeverity:
            count = len([e for e in self.error_log if e.severity == severity])
            if count > 0:
                stats["by_severity"][severity.value] = count

        recent_errors = sorted(self.error_log, key=lambda x: x.timestamp, reverse=True)[:5]
        stats["recent_errors"] = [
            {
                "type": e.error_type,
                "message": e.message,
                "time": time.ctime(e.timestamp)
            }
            for e in recent_errors
        ]

        return stats

    def export_error_log(self, filename: str = None) -> str:
        """導出錯誤日誌 (JSON)"""
        if filename is None:
            filename = f"cfd_error_log_{int(time.time())}.json"

        log_data = []
        for record in self.error_log:
            log_data.append({
                "timestamp": record.timestamp,
                "time_str": time.ctime(record.timestamp),
                "error_type": record.error_type,
                "message": record.message,
                "category": record.category.value,
                "severity": record.severity.value,
                "context": {k: str(v) for k, v in record.context.items()},
            })

        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(log_data, f, indent=2, ensure_ascii=False)

        logger.info(f"✅ 錯誤日誌已導出到: {filename}")
        return filename

    def clear_error_log(self):
        """清理錯誤日誌"""
        self.error_log.clear()
        self.error_count = 0


# 全局錯誤處理器實例
global_error_handler = GlobalErrorHandler()


def handle_cfd_error(error: CFDError, context: Dict = None) -> bool:
    """全局錯誤處理函數"""
    return global_error_handler.handle_error(error, context)


def get_error_handler() -> GlobalErrorHandler:
    """獲取全局錯誤處理器"""
    return global_error_handler
