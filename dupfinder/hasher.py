"""
檔案指紋計算模組

提供兩類指紋：
  - 內容簽章 (SHA-256)：partial（頭 4KB + 尾 4KB + 檔案大小）做 exact 預篩，
    全檔簽章保留給更嚴格的驗證
  - 感知指紋 (64-bit)：縮成 8×8 灰階格後比較亮度梯度，
    用 Hamming distance 判斷兩張圖是否「看起來一樣」

速度取捨：
  - partial signature 只讀頭尾，中間不同但頭尾 + 大小相同的檔案會被誤判，
    這是刻意接受的風險
  - 解碼前先試 EXIF 內嵌縮圖；任何超過 512×512 的圖都以 nearest-neighbor
    縮到 512 以內再算指紋，不追求畫質
"""

import hashlib
import io
import logging
import os
from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import UnsupportedVariantError

if TYPE_CHECKING:
    import numpy as np
    from PIL import Image

logger = logging.getLogger(__name__)

# partial signature 的頭 / 尾讀取量
PARTIAL_CHUNK_SIZE = 4096

# 感知指紋邊長：8 → 64-bit
FINGERPRINT_SIZE = 8
FINGERPRINT_BYTES = FINGERPRINT_SIZE ** 2 // 8

# 解碼後的最大邊長，超過就 nearest-neighbor 縮小
MAX_DECODE_SIZE = 512


class HashAlgorithm(str, Enum):
    """可用的指紋演算法（封閉集合，不同演算法的 bit 排列互不相容）"""
    EXACT = "exact"
    GRADIENT = "gradient"
    DOUBLE_GRADIENT = "double_gradient"
    MEAN = "mean"


class Fingerprint(NamedTuple):
    """感知指紋：演算法 + packed bits"""
    algorithm: HashAlgorithm
    digest: bytes

    def __str__(self) -> str:
        return f"{self.algorithm.value}:{self.digest.hex()}"

    @property
    def bit_length(self) -> int:
        return len(self.digest) * 8

    @classmethod
    def from_string(cls, text: str) -> "Fingerprint":
        """
        解析 `str(fingerprint)` 產生的字串。

        Raises:
            ValueError: 格式錯誤、未知演算法、EXACT 或長度不是 64-bit
        """
        name, sep, hex_digest = text.partition(":")
        if not sep or not hex_digest:
            raise ValueError(f"Malformed fingerprint: {text!r}")
        algorithm = HashAlgorithm(name)
        if algorithm is HashAlgorithm.EXACT:
            raise ValueError("EXACT is not a perceptual fingerprint")
        digest = bytes.fromhex(hex_digest)
        if len(digest) != FINGERPRINT_BYTES:
            raise ValueError(
                f"Expected a {FINGERPRINT_BYTES}-byte digest, got {len(digest)}"
            )
        return cls(algorithm, digest)


def compute_exact_signature(filepath: str, chunk_size: int = 65536) -> str:
    """計算整個檔案的 SHA-256"""
    h = hashlib.sha256()
    with open(filepath, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def compute_partial_signature(
    filepath: str,
    chunk_size: int = PARTIAL_CHUNK_SIZE,
) -> str:
    """
    計算檔案「頭 + 尾 + 大小」的 partial SHA-256，用於 exact 預篩。

    - 一律 hash 前 chunk_size bytes
    - 檔案 > 2 * chunk_size 時再 hash 最後 chunk_size bytes
    - 最後加入 8-byte little-endian 的檔案大小
    """
    file_size = os.path.getsize(filepath)
    h = hashlib.sha256()

    with open(filepath, "rb") as f:
        h.update(f.read(chunk_size))
        if file_size > chunk_size * 2:
            f.seek(-chunk_size, os.SEEK_END)
            h.update(f.read(chunk_size))

    h.update(file_size.to_bytes(8, byteorder="little", signed=False))
    return h.hexdigest()


def read_embedded_thumbnail(filepath: str) -> "Image.Image | None":
    """
    嘗試讀取 EXIF 內嵌的 JPEG 縮圖。

    沒有縮圖、EXIF 壞掉或縮圖無法解碼都回傳 None，由呼叫端改走完整解碼。
    """
    import exifread
    from PIL import Image

    try:
        with open(filepath, 'rb') as f:
            tags = exifread.process_file(f, details=True, strict=False)
    except Exception as e:
        logger.debug("EXIF read failed for %s: %s", os.path.basename(filepath), e)
        return None

    data = tags.get("JPEGThumbnail")
    if not data:
        return None

    try:
        thumb = Image.open(io.BytesIO(data))
        thumb.load()
    except Exception as e:
        logger.debug(
            "Embedded thumbnail undecodable for %s: %s",
            os.path.basename(filepath),
            e,
        )
        return None
    return thumb


def _fit_within(img: "Image.Image", limit: int = MAX_DECODE_SIZE) -> "Image.Image":
    """長或寬超過 limit 時，等比例 nearest-neighbor 縮到 limit×limit 以內"""
    from PIL import Image

    width, height = img.size
    if width <= limit and height <= limit:
        return img.copy()

    scale = min(limit / width, limit / height)
    size = (
        max(1, min(limit, round(width * scale))),
        max(1, min(limit, round(height * scale))),
    )
    return img.resize(size, Image.NEAREST)


def load_decodable_image(filepath: str) -> "Image.Image":
    """
    載入要計算感知指紋的圖片。

    Fast path：EXIF 內嵌縮圖，且長邊 >= MAX_DECODE_SIZE 才採用；
    否則完整解碼。兩條路徑的結果都會縮到 MAX_DECODE_SIZE 以內。

    Raises:
        OSError / PIL.UnidentifiedImageError / Image.DecompressionBombError:
            檔案不存在、無法讀取或無法解碼時
    """
    from PIL import Image

    thumb = read_embedded_thumbnail(filepath)
    if thumb is not None:
        if max(thumb.size) >= MAX_DECODE_SIZE:
            return _fit_within(thumb)
        logger.debug(
            "Embedded thumbnail too small (%dx%d), full decode: %s",
            thumb.width,
            thumb.height,
            os.path.basename(filepath),
        )

    with Image.open(filepath) as img:
        img.load()
        return _fit_within(img)


def _shrink(gray: "Image.Image", size: tuple[int, int]) -> "np.ndarray":
    """縮到 size (width, height)，回傳 (height, width) 的亮度陣列"""
    import numpy as np
    from PIL import Image

    small = gray.resize(size, Image.LANCZOS)
    return np.asarray(small, dtype=np.int16)


def compute_perceptual_fingerprint(
    image: "Image.Image",
    algorithm: HashAlgorithm = HashAlgorithm.GRADIENT,
    hash_size: int = FINGERPRINT_SIZE,
) -> Fingerprint:
    """
    計算圖片的感知指紋 (hash_size² bits)。

    - GRADIENT: (hash_size+1)×hash_size 灰階，右邊 > 左邊 → 1
    - DOUBLE_GRADIENT: 一半 bits 來自水平梯度，一半來自垂直梯度
    - MEAN: hash_size×hash_size 灰階，大於平均亮度 → 1

    Raises:
        UnsupportedVariantError: algorithm 為 EXACT
    """
    import numpy as np

    if algorithm is HashAlgorithm.EXACT:
        raise UnsupportedVariantError(
            "EXACT is a content signature; use compute_exact_signature()"
        )

    gray = image.convert('L')

    if algorithm is HashAlgorithm.GRADIENT:
        pixels = _shrink(gray, (hash_size + 1, hash_size))
        bits = (pixels[:, 1:] > pixels[:, :-1]).flatten()

    elif algorithm is HashAlgorithm.DOUBLE_GRADIENT:
        half = hash_size // 2
        rows = _shrink(gray, (half + 1, hash_size))
        cols = _shrink(gray, (hash_size, half + 1))
        bits = np.concatenate([
            (rows[:, 1:] > rows[:, :-1]).flatten(),
            (cols[1:, :] > cols[:-1, :]).flatten(),
        ])

    else:
        pixels = _shrink(gray, (hash_size, hash_size))
        bits = (pixels > pixels.mean()).flatten()

    # numpy packbits 輸出 big-endian bit order
    return Fingerprint(algorithm, np.packbits(bits).tobytes())


def fingerprint_file(
    filepath: str,
    algorithm: HashAlgorithm = HashAlgorithm.GRADIENT,
) -> Fingerprint:
    """載入圖片並計算感知指紋（worker 的單位工作）"""
    img = load_decodable_image(filepath)
    try:
        return compute_perceptual_fingerprint(img, algorithm)
    finally:
        img.close()


def hamming_distance(a: bytes, b: bytes) -> int:
    """
    計算兩個 bytes 的 Hamming distance (不同 bit 數)。

    使用整數 XOR + popcount，效率高。
    """
    int_a = int.from_bytes(a, byteorder='big')
    int_b = int.from_bytes(b, byteorder='big')
    return (int_a ^ int_b).bit_count()


def fingerprint_distance(a: Fingerprint, b: Fingerprint) -> int:
    """兩個同演算法、同長度指紋的 Hamming distance；否則拒絕比較"""
    if a.algorithm != b.algorithm:
        raise ValueError(
            f"Cannot compare {a.algorithm.value} with {b.algorithm.value} fingerprints"
        )
    if len(a.digest) != len(b.digest):
        raise ValueError(
            f"Cannot compare {a.bit_length}-bit with {b.bit_length}-bit fingerprints"
        )
    return hamming_distance(a.digest, b.digest)


def are_duplicates(a: Fingerprint, b: Fingerprint, threshold: int) -> bool:
    """threshold: 0 = 指紋完全相同，越大容忍越多差異"""
    return fingerprint_distance(a, b) <= threshold


def init_heic_support() -> bool:
    """嘗試載入 HEIC 支援，回傳是否成功"""
    try:
        from pillow_heif import register_heif_opener
        register_heif_opener()
        return True
    except ImportError:
        # 無 HEIC 解碼器時，.heic 檔在指紋階段解碼失敗並計入 errors。
        return False
