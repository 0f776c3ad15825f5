"""
双人说话人检测模块

融合语音活动检测、轮流发言启发式和校准声纹，实时判断两位说话人中谁在说话。
"""

from .detection_service import SpeakerDetectionService
from .exceptions import (
    SpeakerDetectionError,
    InvalidAudioError,
    CalibrationSessionError,
    UnknownSessionError,
    DuplicateSessionError,
    SessionClosedError,
    ProfileNotFoundError,
)
from .interfaces import TranscriptionProvider, TranscriptionEngine, LabeledUtterance
from .models import (
    Speaker,
    EnrollmentTier,
    SampleType,
    DetectionMethod,
    DetectionResult,
    DetectionStats,
    VoiceFeatures,
    VoiceProfile,
    CoupleProfile,
)

__all__ = [
    'SpeakerDetectionService',
    'SpeakerDetectionError',
    'InvalidAudioError',
    'CalibrationSessionError',
    'UnknownSessionError',
    'DuplicateSessionError',
    'SessionClosedError',
    'ProfileNotFoundError',
    'TranscriptionProvider',
    'TranscriptionEngine',
    'LabeledUtterance',
    'Speaker',
    'EnrollmentTier',
    'SampleType',
    'DetectionMethod',
    'DetectionResult',
    'DetectionStats',
    'VoiceFeatures',
    'VoiceProfile',
    'CoupleProfile',
]

__version__ = '1.0.0'
