"""
异常定义

说话人检测模块对调用方显式抛出的错误类型
"""


class SpeakerDetectionError(Exception):
    """说话人检测模块的基础异常"""


class InvalidAudioError(SpeakerDetectionError, ValueError):
    """
    输入音频不合法

    多声道、非有限值、浮点越界或不支持的采样率等情况。
    """


class CalibrationSessionError(SpeakerDetectionError):
    """校准会话状态错误"""


class UnknownSessionError(CalibrationSessionError, KeyError):
    """校准会话不存在"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"校准会话不存在: {session_id}")


class DuplicateSessionError(CalibrationSessionError):
    """校准会话ID重复"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"校准会话已存在: {session_id}")


class SessionClosedError(CalibrationSessionError):
    """校准会话已结束（完成或放弃）"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"校准会话已关闭: {session_id}")


class ProfileNotFoundError(SpeakerDetectionError, KeyError):
    """持久化的双人声纹档案不存在"""

    def __init__(self, couple_id: str):
        self.couple_id = couple_id
        super().__init__(f"声纹档案不存在: {couple_id}")
