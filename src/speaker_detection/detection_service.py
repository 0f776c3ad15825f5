"""
说话人检测协调器

统一的模块入口，每个对话一个实例，协调活动检测、轮换、特征提取、
声纹匹配、融合、校准和统计等子组件
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields
from enum import Enum
from pathlib import Path
from typing import Optional, List, Sequence, Tuple
import yaml
import numpy as np

from vad.activity_detector import ActivityResult
from vad.frame_buffer import FrameBuffer

from .base_detector import BaseSpeakerDetector
from .calibration import CalibrationManager
from .exceptions import ProfileNotFoundError
from .feature_extractor import FeatureExtractor
from .fusion_policy import FusionPolicy
from .interfaces import LabeledUtterance, label_utterance
from .models import (
    Speaker, EnrollmentTier, SampleType, VoiceFeatures,
    DetectionResult, DetectionStats, CalibrationStatusInfo, RecalibrationRecommendation,
    CalibrationSampleResult, CalibrationCompletionResult, CalibrationProgress,
    SessionQualityMetrics, CoupleProfile,
    FeatureConfig, SimilarityConfig, FusionConfig, CalibrationConfig, SPEAKERS,
)
from .profile_repository import ProfileRepository
from .profile_store import ProfileStore
from .similarity_engine import SimilarityEngine
from .statistics import DetectionStatistics, RecalibrationAdvisor

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/speaker_detection_config.yaml"


class ServiceState(Enum):
    """服务状态"""
    IDLE = "idle"
    READY = "ready"
    ERROR = "error"


def _build_config(cls, section: Optional[dict]):
    """用配置段构造配置数据类，忽略未知字段"""
    section = dict(section or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        logger.warning(f"{cls.__name__} 忽略未知配置项: {unknown}")
    config = cls(**{k: v for k, v in section.items() if k in known})
    config.validate()
    return config


class SpeakerDetectionService:
    """
    双人说话人检测服务

    提供实时帧检测、校准、统计和档案持久化的统一接口。
    有状态的部分（轮换、统计）按帧到达顺序串行更新。
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[dict] = None):
        """
        初始化说话人检测服务

        Args:
            config_path: 配置文件路径
            config: 配置字典，提供时忽略 config_path
        """
        self.state = ServiceState.IDLE

        # 加载配置
        self.config = config if config is not None else self._load_config(config_path)

        # 子组件
        self.feature_extractor: Optional[FeatureExtractor] = None
        self.similarity_engine: Optional[SimilarityEngine] = None
        self.fusion_policy: Optional[FusionPolicy] = None
        self.base_detector: Optional[BaseSpeakerDetector] = None
        self.profile_store: Optional[ProfileStore] = None
        self.calibration: Optional[CalibrationManager] = None
        self.statistics: Optional[DetectionStatistics] = None
        self.advisor: Optional[RecalibrationAdvisor] = None
        self._repository: Optional[ProfileRepository] = None
        self._frame_buffer: Optional[FrameBuffer] = None

        # 帧处理锁（轮换状态与统计必须串行更新）
        self._frame_lock = threading.Lock()

        self._initialize()

        logger.info("SpeakerDetectionService 初始化完成")

    def _load_config(self, config_path: Optional[str] = None) -> dict:
        """
        加载配置文件

        Args:
            config_path: 配置文件路径

        Returns:
            配置字典
        """
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        config_file = Path(config_path)

        if not config_file.exists():
            logger.warning(f"配置文件不存在: {config_path}，使用默认配置")
            return self._get_default_config()

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
            if not isinstance(config, dict):
                raise ValueError(f"配置文件格式错误: {config_path}")
            logger.info(f"加载配置文件: {config_path}")
            return config
        except Exception as e:
            logger.error(f"加载配置文件失败: {e}，使用默认配置", exc_info=True)
            return self._get_default_config()

    def _get_default_config(self) -> dict:
        """获取默认配置"""
        return {
            'activity': {
                'energy_threshold': 0.01,
                'frame_size': 1024,
                'gap_tolerance_ms': 20.0,
            },
            'turn_taking': {
                'pause_threshold_ms': 400,
                'initial_speaker': 'A',
            },
            'features': {
                'device': 'cpu',
                'fft_size': 1024,
                'min_pitch_hz': 80.0,
                'max_pitch_hz': 400.0,
            },
            'similarity': {
                'pitch_weight': 0.25,
                'spectral_weight': 0.35,
                'cepstral_weight': 0.25,
                'voiceprint_weight': 0.15,
            },
            'fusion': {
                'profile_match_threshold': 0.8,
                'voice_similarity_threshold': 0.75,
                'base_confidence_threshold': 0.6,
                'calibration_confidence_boost': 0.15,
            },
            'calibration': {
                'quick_target_samples': 3,
                'extended_target_samples': 8,
                'min_sample_duration_ms': 3000,
                'min_snr_db': 10.0,
                'min_clarity_score': 0.15,
                'profile_max_age_days': 7,
                'low_accuracy_threshold': 0.7,
                'min_detections': 20,
            },
            'storage': {
                'profiles_dir': 'data/couple_profiles/',
                'auto_save': False,
            },
        }

    def _initialize(self):
        """初始化各个子组件"""
        try:
            activity_config = self.config.get('activity', {})
            turn_config = self.config.get('turn_taking', {})

            features_config = dict(self.config.get('features', {}))
            device = features_config.pop('device', 'cpu')
            self.feature_extractor = FeatureExtractor(
                config=_build_config(FeatureConfig, features_config),
                device=device,
            )

            self.similarity_engine = SimilarityEngine(
                config=_build_config(SimilarityConfig, self.config.get('similarity'))
            )
            self.fusion_policy = FusionPolicy(
                config=_build_config(FusionConfig, self.config.get('fusion'))
            )

            self.base_detector = BaseSpeakerDetector(
                energy_threshold=activity_config.get('energy_threshold', 0.01),
                pause_threshold_ms=turn_config.get('pause_threshold_ms', 400),
                initial_speaker=Speaker(turn_config.get('initial_speaker', 'A')),
                debug=activity_config.get('debug', False),
            )

            calibration_config = dict(self.config.get('calibration', {}))
            self.advisor = RecalibrationAdvisor(
                low_accuracy_threshold=calibration_config.pop('low_accuracy_threshold', 0.7),
                min_detections=calibration_config.pop('min_detections', 20),
            )
            calibration_config = _build_config(CalibrationConfig, calibration_config)

            self.profile_store = ProfileStore(
                max_age_days=calibration_config.profile_max_age_days,
                min_quality=calibration_config.min_clarity_score,
            )
            self.calibration = CalibrationManager(
                feature_extractor=self.feature_extractor,
                profile_store=self.profile_store,
                config=calibration_config,
            )
            self.statistics = DetectionStatistics()

            self.state = ServiceState.READY
            logger.info("所有子组件初始化成功")

        except Exception as e:
            logger.error(f"初始化失败: {e}", exc_info=True)
            self.state = ServiceState.ERROR
            raise

    @property
    def repository(self) -> ProfileRepository:
        """档案仓库（首次使用时创建存储目录）"""
        if self._repository is None:
            storage_config = self.config.get('storage', {})
            self._repository = ProfileRepository(
                profiles_dir=storage_config.get('profiles_dir', 'data/couple_profiles/')
            )
        return self._repository

    # ===== 实时检测 =====

    def process_frame(
        self,
        audio_data,
        sample_rate: int,
        timestamp: Optional[float] = None
    ) -> Optional[DetectionResult]:
        """
        处理一个音频帧

        Args:
            audio_data: 单声道音频帧（float [-1, 1] 或整型 PCM）
            sample_rate: 采样率
            timestamp: 帧时间戳（秒），默认当前时间

        Returns:
            DetectionResult；静音帧返回 None 且不计入统计

        Raises:
            InvalidAudioError: 输入音频不合法
        """
        timestamp = time.time() if timestamp is None else timestamp
        audio = self.feature_extractor.prepare_audio(audio_data, sample_rate)

        with self._frame_lock:
            activity = self.base_detector.detect_activity(audio)
            if not activity.is_speech:
                return None
            return self._decide(audio, sample_rate, activity, None, timestamp)

    def process_frames(
        self,
        frames: Sequence[Tuple[np.ndarray, float]],
        sample_rate: int,
        max_workers: Optional[int] = None
    ) -> List[Optional[DetectionResult]]:
        """
        批量处理音频帧

        特征提取在线程池中并行执行；轮换、融合和统计按帧顺序串行更新，
        结果与逐帧调用 process_frame() 相同。

        Args:
            frames: [(audio, timestamp), ...]，按时间顺序
            sample_rate: 采样率
            max_workers: 线程池大小

        Returns:
            与输入一一对应的结果列表（静音帧为 None）
        """
        prepared = [(self.feature_extractor.prepare_audio(audio, sample_rate), timestamp)
                    for audio, timestamp in frames]
        if not prepared:
            return []

        threshold = self.base_detector.activity_detector.threshold
        extract = self.profile_store.has_profiles()

        def _extract(audio: np.ndarray) -> Optional[VoiceFeatures]:
            if not extract or self.base_detector.activity_detector.compute_energy(audio) <= threshold:
                return None
            return self.feature_extractor.extract(audio, sample_rate)

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            features = list(executor.map(_extract, [audio for audio, _ in prepared]))

        results: List[Optional[DetectionResult]] = []
        with self._frame_lock:
            for (audio, timestamp), frame_features in zip(prepared, features):
                activity = self.base_detector.detect_activity(audio)
                if not activity.is_speech:
                    results.append(None)
                    continue
                results.append(self._decide(audio, sample_rate, activity, frame_features, timestamp))

        logger.debug(f"批量处理 {len(prepared)} 帧, 语音帧 {sum(r is not None for r in results)}")
        return results

    def feed_audio(
        self,
        audio_chunk,
        sample_rate: int,
        timestamp: Optional[float] = None
    ) -> List[DetectionResult]:
        """
        送入采集端的任意长度数据块

        数据块先拼接进帧缓冲区，每凑够一个分析帧就检测一次。

        Args:
            audio_chunk: 单声道音频数据块
            sample_rate: 采样率，变化时丢弃缓冲区中的旧数据
            timestamp: 数据块第一个样本的时间（秒）

        Returns:
            本次凑齐的语音帧的检测结果（不含静音帧）
        """
        audio = self.feature_extractor.prepare_audio(audio_chunk, sample_rate)

        if self._frame_buffer is None or self._frame_buffer.sample_rate != sample_rate:
            activity_config = self.config.get('activity', {})
            self._frame_buffer = FrameBuffer(
                sample_rate=sample_rate,
                frame_size=activity_config.get('frame_size', 1024),
                gap_tolerance_ms=activity_config.get('gap_tolerance_ms', 20.0),
            )
        self._frame_buffer.append(audio, timestamp)

        frames = list(self._frame_buffer.frames())
        return [r for r in self.process_frames(frames, sample_rate) if r is not None]

    def _decide(
        self,
        audio: np.ndarray,
        sample_rate: int,
        activity: ActivityResult,
        features: Optional[VoiceFeatures],
        timestamp: float
    ) -> DetectionResult:
        base = self.base_detector.decide(activity, timestamp)

        profiles = self.profile_store.snapshot()
        similarities = {}
        if profiles:
            if features is None:
                features = self.feature_extractor.extract(audio, sample_rate)
            similarities = self.similarity_engine.score_profiles(features, profiles)

        result = self.fusion_policy.fuse(similarities, base, timestamp)

        if result.is_calibrated and result.speaker is not None:
            self.profile_store.mark_used(result.speaker)
        self.statistics.update(result)

        return result

    def set_active_speaker(self, speaker: Speaker):
        """手动指定当前说话人"""
        with self._frame_lock:
            self.base_detector.set_active_speaker(Speaker(speaker))

    def set_pause_threshold(self, pause_threshold_ms) -> int:
        """
        设置换人停顿阈值

        Returns:
            实际生效的阈值（100-2000ms）
        """
        with self._frame_lock:
            return self.base_detector.set_pause_threshold(pause_threshold_ms)

    # ===== 校准 =====

    def start_calibration(self, session_id: Optional[str] = None,
                          tier: EnrollmentTier = EnrollmentTier.QUICK) -> str:
        return self.calibration.start(session_id, tier)

    def record_calibration_sample(
        self,
        session_id: str,
        speaker: Speaker,
        sample_type: SampleType,
        audio_data,
        sample_rate: int
    ) -> CalibrationSampleResult:
        return self.calibration.record_sample(session_id, speaker, sample_type, audio_data, sample_rate)

    def complete_calibration(self, session_id: str,
                             profile_name: Optional[str] = None) -> CalibrationCompletionResult:
        """
        完成校准

        成功时替换当前档案，并按配置自动保存双人档案

        Args:
            session_id: 会话ID
            profile_name: 双人档案名称

        Returns:
            CalibrationCompletionResult，成功时 couple_profile 不为空
        """
        result = self.calibration.complete(session_id, profile_name)

        if result.success and self.config.get('storage', {}).get('auto_save', False):
            self.save_couple_profile(result.couple_profile)

        return result

    def abandon_calibration(self, session_id: str):
        self.calibration.abandon(session_id)

    def get_calibration_progress(self, session_id: str) -> CalibrationProgress:
        return self.calibration.get_progress(session_id)

    def get_session_metrics(self, session_id: str) -> SessionQualityMetrics:
        return self.calibration.get_session_metrics(session_id)

    def get_calibration_status(self) -> CalibrationStatusInfo:
        """
        获取校准状态

        Returns:
            CalibrationStatusInfo
        """
        profiles = self.profile_store.snapshot()
        return CalibrationStatusInfo(
            is_calibrated=all(speaker in profiles for speaker in SPEAKERS),
            profile_present={speaker: speaker in profiles for speaker in SPEAKERS},
            needs_recalibration=self.profile_store.needs_recalibration(),
            profile_quality=self.profile_store.average_quality(),
            last_calibration_time=self.profile_store.last_calibration_time,
        )

    # ===== 统计 =====

    def get_detection_stats(self) -> DetectionStats:
        return self.statistics.snapshot()

    def should_recalibrate(self, now: Optional[float] = None) -> RecalibrationRecommendation:
        return self.advisor.advise(self.profile_store, self.statistics.snapshot(), now)

    # ===== 档案持久化 =====

    def save_couple_profile(self, profile: CoupleProfile) -> bool:
        return self.repository.save(profile)

    def load_couple_profile(self, couple_id: str) -> CoupleProfile:
        """
        加载已保存的双人档案并设为当前档案

        Args:
            couple_id: 档案ID

        Returns:
            CoupleProfile

        Raises:
            ProfileNotFoundError: 档案不存在或无法读取
        """
        profile = self.repository.load(couple_id)
        if profile is None:
            raise ProfileNotFoundError(couple_id)

        self.profile_store.replace_all(profile.profiles(), calibrated_at=profile.last_calibrated)
        logger.info(f"已加载双人档案: couple_id={couple_id}, name={profile.name}, "
                    f"accuracy={profile.accuracy:.2f}")
        return profile

    # ===== 协作方 =====

    @staticmethod
    def label_utterance(text: str, result: Optional[DetectionResult]) -> LabeledUtterance:
        """为转写文本打上说话人标签，供对话辅导模块使用"""
        return label_utterance(text, result)

    # ===== 生命周期 =====

    def get_statistics(self) -> dict:
        """
        获取服务统计信息

        Returns:
            统计信息字典
        """
        stats = self.statistics.snapshot()
        return {
            'state': self.state.value,
            'detection': {
                'total_detections': stats.total_detections,
                'calibrated_detections': stats.calibrated_detections,
                'uncalibrated_detections': stats.uncalibrated_detections,
                'avg_confidence': stats.avg_confidence,
                'profile_matches': {s.value: n for s, n in stats.profile_matches.items()},
            },
            'base_detector': self.base_detector.get_statistics(),
            'similarity_engine': self.similarity_engine.get_statistics(),
            'profile_store': self.profile_store.get_statistics(),
            'active_calibration_sessions': self.calibration.active_sessions(),
            'frame_buffer': self._frame_buffer.get_statistics() if self._frame_buffer else None,
        }

    def cleanup(self):
        """重置统计、档案、校准会话和轮换状态"""
        with self._frame_lock:
            self.calibration.clear()
            self.profile_store.clear()
            self.statistics.reset()
            self.similarity_engine.reset_statistics()
            self.base_detector.reset()
            if self._frame_buffer is not None:
                self._frame_buffer.clear()
        logger.info("SpeakerDetectionService 已清理")

    def __enter__(self):
        """上下文管理器入口"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器退出"""
        self.cleanup()
