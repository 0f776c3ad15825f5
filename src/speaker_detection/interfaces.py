"""
外部协作方接口

语音转写由可插拔的转写服务提供，检测核心不依赖具体实现；
对话辅导模块只消费 (speaker, text, confidence) 三元组。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .models import Speaker, DetectionResult


class TranscriptionEngine(str, Enum):
    """转写服务类型"""
    NATIVE = "native"  # 服务端模型
    BROWSER = "browser"  # 客户端（浏览器）识别，服务端只收文本


@dataclass(frozen=True)
class TranscriptionResult:
    """一次转写的结果"""
    text: str
    confidence: float  # 0.0-1.0
    is_final: bool = True


@dataclass(frozen=True)
class LabeledUtterance:
    """
    带说话人标签的一句话

    对话辅导模块的输入
    """
    speaker: Optional[Speaker]
    text: str
    confidence: float
    timestamp: Optional[float] = None
    method: Optional[str] = None

    def as_tuple(self):
        return self.speaker, self.text, self.confidence


class TranscriptionProvider(ABC):
    """
    转写服务抽象接口

    输入为单声道 float32 音频（[-1, 1]）
    """

    @property
    @abstractmethod
    def engine(self) -> TranscriptionEngine:
        """服务类型标签"""
        ...

    @property
    def sample_rate(self) -> int:
        """期望的采样率"""
        return 16000

    @abstractmethod
    def transcribe(self, audio: np.ndarray, sample_rate: int) -> TranscriptionResult:
        """转写一段音频"""
        ...


def label_utterance(text: str, result: Optional[DetectionResult]) -> LabeledUtterance:
    """
    把转写文本与检测结果组合为带标签的句子

    Args:
        text: 转写文本
        result: 该句对应的检测结果；None（静音或未检测）时说话人为空、置信度为 0
    """
    if result is None:
        return LabeledUtterance(speaker=None, text=text, confidence=0.0)
    return LabeledUtterance(
        speaker=result.speaker,
        text=text,
        confidence=result.confidence,
        timestamp=result.timestamp,
        method=str(getattr(result.method, 'value', result.method)),
    )


def transcribe_and_label(
    provider: TranscriptionProvider,
    audio: np.ndarray,
    sample_rate: int,
    result: Optional[DetectionResult]
) -> LabeledUtterance:
    """调用转写服务并打上说话人标签"""
    transcription = provider.transcribe(audio, sample_rate)
    return label_utterance(transcription.text, result)
