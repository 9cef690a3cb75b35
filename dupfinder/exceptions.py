"""自訂例外類別，供 CLI 層捕捉後統一輸出錯誤訊息

只有「設定錯誤」會拋給呼叫端；單一檔案的失敗一律計數後略過。
"""


class DupFinderError(Exception):
    """所有 dupfinder 錯誤的基礎類別"""
    pass


class InvalidParameterError(DupFinderError):
    """呼叫參數不合法（門檻、worker 數量等）"""
    pass


class WorkerPoolError(DupFinderError):
    """無法建立 thread pool"""
    pass


class UnsupportedVariantError(DupFinderError):
    """要求感知雜湊計算一個非感知的演算法（例如 EXACT）"""
    pass
