"""
图片处理模块 - 图片压缩和 base64 编解码
按预设缩放并重新编码图片，以控制写入存储前的体积
"""
import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompressionPreset:
    max_dimension_px: int
    quality: float  # 0-1


# 图床上传：保真度较高
UPLOAD_PRESET = CompressionPreset(max_dimension_px=1200, quality=0.7)
# 内联存储（上传降级为 base64 时）
INLINE_PRESET = CompressionPreset(max_dimension_px=800, quality=0.6)
# 写入文档存储前：最激进
STORAGE_PRESET = CompressionPreset(max_dimension_px=600, quality=0.5)

DEFAULT_PRESETS = {
    "upload": UPLOAD_PRESET,
    "inline": INLINE_PRESET,
    "storage": STORAGE_PRESET,
}


def get_preset(name: str, config: Optional[dict] = None) -> CompressionPreset:
    """
    读取压缩预设，配置中的字段覆盖默认值

    Args:
        name: 预设名称（upload / inline / storage）
        config: image_presets 配置字典
    """
    default = DEFAULT_PRESETS[name]
    override = (config or {}).get(name) or {}
    return CompressionPreset(
        max_dimension_px=int(override.get("max_dimension_px", default.max_dimension_px)),
        quality=float(override.get("quality", default.quality)),
    )


def _to_pillow_quality(quality: float) -> int:
    # 0-1 映射到 Pillow 的 1-95（超过95对JPEG没有意义）
    return max(1, min(95, int(round(quality * 100))))


def _flatten_transparency(img: Image.Image) -> Image.Image:
    """JPEG 不支持透明，铺白色背景"""
    if img.mode in ('RGBA', 'LA', 'P'):
        if img.mode == 'P':
            img = img.convert('RGBA')
        background = Image.new('RGB', img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1] if img.mode in ('RGBA', 'LA') else None)
        return background
    if img.mode != 'RGB':
        return img.convert('RGB')
    return img


def compress_image(
    payload: Union[str, bytes],
    max_dimension_px: int,
    quality: float
) -> Union[str, bytes]:
    """
    压缩图片：缩放到最长边不超过 max_dimension_px（只缩小不放大），再以JPEG重新编码

    Args:
        payload: data URI / 纯base64字符串，或原始二进制
        max_dimension_px: 最长边上限（像素）
        quality: 有损编码质量 (0-1)

    Returns:
        压缩后的 data URI；无法解码时原样返回 payload（尽力而为，不抛异常）
    """
    if isinstance(payload, (bytes, bytearray)):
        image_bytes = bytes(payload)
    else:
        image_bytes, _, decode_error = decode_base64_image(payload)
        if decode_error:
            logger.warning(f"[IMG_OPT] 无法解码图片，保留原始数据: {decode_error}")
            return payload

    try:
        with Image.open(io.BytesIO(image_bytes)) as opened:
            opened.load()
            img = opened.copy()
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        logger.warning(f"[IMG_OPT] 无法加载图片，保留原始数据: {type(e).__name__}: {e}")
        return payload

    original_size = len(image_bytes)
    old_size = (img.width, img.height)
    if max(img.width, img.height) > max_dimension_px:
        img.thumbnail((max_dimension_px, max_dimension_px), Image.Resampling.LANCZOS)
        logger.debug(f"[IMG_OPT] 调整尺寸: {old_size[0]}x{old_size[1]} -> {img.width}x{img.height}")

    img = _flatten_transparency(img)

    output = io.BytesIO()
    img.save(output, format='JPEG', quality=_to_pillow_quality(quality), optimize=True)
    compressed = image_to_base64(output.getvalue(), 'image/jpeg')

    logger.info(
        f"[IMG_OPT] 压缩完成: {original_size/1024:.1f}KB -> {len(compressed)*0.75/1024:.1f}KB "
        f"({img.width}x{img.height}, 质量={quality})"
    )
    return compressed


def compress_with_preset(payload: Union[str, bytes], preset: CompressionPreset) -> Union[str, bytes]:
    return compress_image(payload, preset.max_dimension_px, preset.quality)


def image_to_base64(image_data: bytes, mime_type: str = 'image/png') -> str:
    """
    将图片数据转换为base64 Data URI

    Args:
        image_data: 图片的二进制数据
        mime_type: MIME类型（如'image/png', 'image/jpeg'等）

    Returns:
        完整的base64 Data URI字符串
    """
    b64_encoded = base64.b64encode(image_data).decode('utf-8')
    return f"data:{mime_type};base64,{b64_encoded}"


def get_mime_type_from_format(image_format: str) -> str:
    """根据图片格式获取MIME类型"""
    format_map = {
        'PNG': 'image/png',
        'JPEG': 'image/jpeg',
        'JPG': 'image/jpeg',
        'WEBP': 'image/webp',
        'GIF': 'image/gif',
        'BMP': 'image/bmp',
        'TIFF': 'image/tiff'
    }
    return format_map.get((image_format or '').upper(), 'image/png')


def split_data_uri(data_uri: str) -> Tuple[str, str]:
    """拆分 data URI，返回 (mime_type, base64数据)"""
    if data_uri.startswith('data:') and ',' in data_uri:
        header, data = data_uri.split(',', 1)
        mime_type = header[5:].split(';')[0] or 'image/png'
        return mime_type, data
    return 'image/png', data_uri


def decode_base64_image(base64_data: str) -> Tuple[Optional[bytes], Optional[str], Optional[str]]:
    """
    解码base64图片数据（只做base64解码，不验证图片内容）

    Args:
        base64_data: base64字符串（可以是纯base64或Data URI格式）

    Returns:
        (图片二进制数据, MIME类型, 错误信息)
    """
    if not isinstance(base64_data, str) or not base64_data:
        return None, None, "空的图片数据"

    mime_type, data = split_data_uri(base64_data)
    try:
        image_bytes = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        return None, None, f"解码base64图片失败: {type(e).__name__}: {e}"

    if not image_bytes:
        return None, None, "解码后的图片数据为空"
    return image_bytes, mime_type, None


def estimate_payload_bytes(data_uri: str) -> int:
    """估算 data URI 解码后的大小（base64 膨胀约 4/3）"""
    _, data = split_data_uri(data_uri)
    return int(len(data) * 0.75)
