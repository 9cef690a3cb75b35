"""dupfinder — 重複 / 近似重複圖片偵測引擎"""

__version__ = "1.0.0"
