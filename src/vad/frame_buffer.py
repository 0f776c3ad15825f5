"""
音频帧缓冲管理

把采集端任意长度的数据块拼接、切分为固定长度的分析帧，并为每帧推算时间戳
"""

import time
from typing import Iterator, Optional, Tuple
import logging

import numpy as np

from .audio_utils import to_float_audio

logger = logging.getLogger(__name__)


class FrameBuffer:
    """
    分析帧缓冲区

    帧时间戳 = 缓冲区头部时间 + 已消费样本数 / 采样率
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        frame_size: int = 1024,
        hop_size: Optional[int] = None,
        max_buffer_size: int = 16000 * 30,  # 默认最大 30 秒缓冲
        gap_tolerance_ms: float = 20.0
    ):
        """
        初始化帧缓冲区

        Args:
            sample_rate: 采样率
            frame_size: 分析帧长度（样本数），默认 1024 (64ms @ 16kHz)
            hop_size: 帧移（样本数），默认等于 frame_size（不重叠）
            max_buffer_size: 最大缓冲区大小（样本数），超出时丢弃最旧的数据
            gap_tolerance_ms: 数据块时间晚于缓冲区末尾超过该值时视为采集中断
        """
        hop_size = frame_size if hop_size is None else hop_size
        if sample_rate <= 0 or frame_size <= 0 or hop_size <= 0:
            raise ValueError("sample_rate、frame_size 与 hop_size 必须大于 0")
        if max_buffer_size < frame_size:
            raise ValueError("max_buffer_size 不能小于 frame_size")

        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.hop_size = hop_size
        self.max_buffer_size = max_buffer_size
        self.gap_tolerance_ms = gap_tolerance_ms

        self.buffer = np.zeros(0, dtype=np.float32)
        self.head_timestamp: Optional[float] = None  # 缓冲区第一个样本的时间

        # 统计信息
        self.total_samples_added = 0
        self.total_samples_dropped = 0
        self.total_frames_emitted = 0
        self.total_gaps = 0

        logger.debug(f"FrameBuffer 初始化: sr={sample_rate}, frame_size={frame_size}, "
                     f"hop_size={hop_size}, max_buffer_size={max_buffer_size}")

    def append(self, audio_data, timestamp: Optional[float] = None):
        """
        追加音频数据块

        Args:
            audio_data: 音频数据（整型 PCM 或 float）
            timestamp: 数据块第一个样本的时间（秒）。缓冲区为空时作为头部时间；
                晚于缓冲区末尾超过 gap_tolerance_ms 时丢弃残留数据，
                从该时间重新开始，否则按样本数顺延
        """
        audio = to_float_audio(audio_data)

        if self.buffer.size == 0:
            self.head_timestamp = time.time() if timestamp is None else timestamp
        elif timestamp is not None:
            expected = self.head_timestamp + self.buffer.size / self.sample_rate
            gap_ms = (timestamp - expected) * 1000.0
            if gap_ms > self.gap_tolerance_ms:
                logger.debug(f"采集中断 {gap_ms:.0f}ms，丢弃 {self.buffer.size} 个残留样本")
                self.total_samples_dropped += self.buffer.size
                self.total_gaps += 1
                self.buffer = np.zeros(0, dtype=np.float32)
                self.head_timestamp = timestamp

        self.buffer = np.concatenate([self.buffer, audio])
        self.total_samples_added += audio.size

        overflow = self.buffer.size - self.max_buffer_size
        if overflow > 0:
            self.buffer = self.buffer[overflow:]
            self.head_timestamp += overflow / self.sample_rate
            self.total_samples_dropped += overflow
            logger.warning(f"缓冲区溢出，丢弃 {overflow} 个旧样本")

    def pop_frame(self) -> Optional[Tuple[np.ndarray, float]]:
        """
        取出一个分析帧

        Returns:
            (frame, timestamp)；数据不足一帧时返回 None
        """
        if self.buffer.size < self.frame_size:
            return None

        frame = self.buffer[:self.frame_size].copy()
        timestamp = self.head_timestamp

        consumed = min(self.hop_size, self.buffer.size)
        self.buffer = self.buffer[consumed:]
        self.head_timestamp += consumed / self.sample_rate
        self.total_frames_emitted += 1

        return frame, timestamp

    def frames(self) -> Iterator[Tuple[np.ndarray, float]]:
        """依次取出所有完整的分析帧"""
        while True:
            item = self.pop_frame()
            if item is None:
                return
            yield item

    def clear(self):
        """清空缓冲区"""
        self.buffer = np.zeros(0, dtype=np.float32)
        self.head_timestamp = None
        logger.debug("缓冲区已清空")

    def size(self) -> int:
        return int(self.buffer.size)

    def get_statistics(self) -> dict:
        return {
            'current_size': self.size(),
            'frame_size': self.frame_size,
            'hop_size': self.hop_size,
            'max_buffer_size': self.max_buffer_size,
            'total_samples_added': self.total_samples_added,
            'total_samples_dropped': self.total_samples_dropped,
            'total_frames_emitted': self.total_frames_emitted,
            'total_gaps': self.total_gaps,
            'utilization': self.size() / self.max_buffer_size,
        }
