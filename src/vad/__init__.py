"""
VAD (Voice Activity Detection) 模块

提供基于能量的语音活动检测、两人轮流发言跟踪以及音频分帧功能。
"""

from .activity_detector import ActivityDetector, ActivityResult
from .turn_tracker import TurnTracker, TurnDecision
from .frame_buffer import FrameBuffer

__all__ = ['ActivityDetector', 'ActivityResult', 'TurnTracker', 'TurnDecision', 'FrameBuffer']
