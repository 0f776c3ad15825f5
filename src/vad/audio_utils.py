"""
音频格式工具

把采集端送来的 PCM 数据统一为单声道 float32
"""

import numpy as np

INT16_FULL_SCALE = 32768.0


def to_float_audio(audio) -> np.ndarray:
    """
    转换为单声道 float32 音频

    整型 PCM 按满量程缩放到 [-1, 1)：numpy 整型数组按其位宽，
    Python 整数列表按 int16 处理。浮点数据只做类型转换。

    Args:
        audio: numpy array 或数值序列，形状 (n,) / (n, 1) / (1, n)

    Returns:
        一维 float32 数组

    Raises:
        ValueError: 多声道数据
    """
    is_array = isinstance(audio, np.ndarray)
    data = np.asarray(audio)

    if data.ndim > 1:
        data = np.squeeze(data)
        if data.ndim > 1:
            raise ValueError(f"仅支持单声道音频，收到形状 {np.shape(audio)}")
    data = np.atleast_1d(data)

    if data.dtype == np.bool_:
        raise ValueError("音频数据类型不能为 bool")

    if np.issubdtype(data.dtype, np.signedinteger):
        full_scale = float(2 ** (data.dtype.itemsize * 8 - 1)) if is_array else INT16_FULL_SCALE
        return (data.astype(np.float64) / full_scale).astype(np.float32)

    if np.issubdtype(data.dtype, np.unsignedinteger):
        # 无符号 PCM（如 8bit）以中点为零
        half = float(2 ** (data.dtype.itemsize * 8 - 1))
        return ((data.astype(np.float64) - half) / half).astype(np.float32)

    return data.astype(np.float32, copy=False)
