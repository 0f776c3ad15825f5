"""
能量活动检测器

按帧计算 RMS 能量，判断是否为语音
"""

import logging
from dataclasses import dataclass
from typing import Dict

import numpy as np

from .audio_utils import to_float_audio

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityResult:
    """单帧活动检测结果"""
    is_speech: bool
    confidence: float  # min(1, energy / threshold)
    energy: float  # RMS 能量


class ActivityDetector:
    """
    基于 RMS 能量的语音活动检测器

    无状态判定：同一帧多次检测结果相同，只累计统计计数。
    """

    def __init__(self, threshold: float = 0.01, debug: bool = False):
        """
        初始化活动检测器

        Args:
            threshold: RMS 能量阈值，默认 0.01
            debug: 调试模式，记录每帧日志
        """
        if threshold <= 0:
            raise ValueError("threshold 必须大于 0")

        self.threshold = threshold
        self.debug = debug

        # 统计信息
        self.total_frames_processed = 0
        self.speech_frames_detected = 0

        logger.info(f"ActivityDetector 初始化: threshold={threshold}")

    @staticmethod
    def compute_energy(audio: np.ndarray) -> float:
        """计算 RMS 能量，空帧返回 0"""
        if audio.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(audio, dtype=np.float64))))

    def detect(self, audio_data) -> ActivityResult:
        """
        检测单帧是否为语音

        Args:
            audio_data: 音频帧，float 范围 [-1, 1] 或整型 PCM

        Returns:
            ActivityResult
        """
        audio = to_float_audio(audio_data)
        energy = self.compute_energy(audio)

        is_speech = energy > self.threshold
        confidence = min(1.0, energy / self.threshold)

        self.total_frames_processed += 1
        if is_speech:
            self.speech_frames_detected += 1

        if self.debug:
            logger.debug(f"活动检测: energy={energy:.5f}, speech={is_speech}, confidence={confidence:.3f}")

        return ActivityResult(is_speech=is_speech, confidence=confidence, energy=energy)

    def update_threshold(self, threshold: float):
        """
        动态更新能量阈值

        Args:
            threshold: 新阈值（> 0）
        """
        if threshold <= 0:
            raise ValueError("threshold 必须大于 0")

        old_threshold = self.threshold
        self.threshold = threshold
        logger.info(f"能量阈值已更新: {old_threshold:.4f} -> {threshold:.4f}")

    def reset_statistics(self):
        self.total_frames_processed = 0
        self.speech_frames_detected = 0

    def get_statistics(self) -> Dict:
        speech_ratio = (self.speech_frames_detected / self.total_frames_processed
                        if self.total_frames_processed > 0 else 0.0)
        return {
            'total_frames_processed': self.total_frames_processed,
            'speech_frames_detected': self.speech_frames_detected,
            'speech_ratio': speech_ratio,
            'threshold': self.threshold,
        }
