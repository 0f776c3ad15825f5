"""
数据模型定义

定义双人说话人检测模块使用的数据结构
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Dict, List, Tuple
import numpy as np

CEPSTRAL_DIM = 13  # 倒谱系数个数
VOICEPRINT_DIM = 256  # 声纹向量长度


class Speaker(str, Enum):
    """说话人槽位（一对伴侣中的 A / B）"""
    A = "A"
    B = "B"

    @property
    def other(self) -> 'Speaker':
        """另一位说话人"""
        return Speaker.B if self is Speaker.A else Speaker.A


class EnrollmentTier(str, Enum):
    """注册档位：只影响采集样本数，不影响数据结构"""
    QUICK = "quick"
    EXTENDED = "extended"


class SampleType(str, Enum):
    """校准提示语类型"""
    NEUTRAL = "neutral"
    HAPPY = "happy"
    FRUSTRATED = "frustrated"
    QUESTION = "question"
    STATEMENT = "statement"
    EMOTIONAL = "emotional"


class BaseMethod(str, Enum):
    """基础检测器（能量VAD + 停顿轮换）的判定方式"""
    TURN_SWITCH = "turn_switch"  # 停顿超过阈值，切换说话人
    TURN_CONTINUE = "turn_continue"  # 同一轮发言继续


class DetectionMethod(str, Enum):
    """融合决策的方法标签（封闭集合）"""
    UNCALIBRATED_TURN_SWITCH = "uncalibrated_turn_switch"
    UNCALIBRATED_TURN_CONTINUE = "uncalibrated_turn_continue"
    CALIBRATED_PROFILE_MATCH = "calibrated_profile_match"
    HYBRID_CALIBRATED_VERIFIED = "hybrid_calibrated_verified"
    HYBRID_CALIBRATION_CONFLICT = "hybrid_calibration_conflict"
    CALIBRATED_FALLBACK = "calibrated_fallback"
    HYBRID_FALLBACK = "hybrid_fallback"

    @classmethod
    def uncalibrated(cls, base_method: BaseMethod) -> 'DetectionMethod':
        """未校准时沿用基础检测器的方法，加 uncalibrated_ 前缀"""
        return cls(f"uncalibrated_{BaseMethod(base_method).value}")


class RecalibrationReason(str, Enum):
    NO_CALIBRATION = "no_calibration"
    PROFILE_EXPIRED = "profile_expired"
    LOW_ACCURACY = "low_accuracy"
    PROFILE_CURRENT = "profile_current"


class Urgency(str, Enum):
    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"


# ===== 声学特征 =====

@dataclass(frozen=True)
class PitchFeatures:
    """基频特征"""
    fundamental: float  # 基频 (Hz)
    range: Tuple[float, float]  # 推断的基频范围 (Hz)
    variance: float = 0.0

    def to_dict(self) -> dict:
        return {
            'fundamental': self.fundamental,
            'range': [self.range[0], self.range[1]],
            'variance': self.variance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PitchFeatures':
        low, high = data['range']
        return cls(
            fundamental=float(data['fundamental']),
            range=(float(low), float(high)),
            variance=float(data.get('variance', 0.0)),
        )


@dataclass(frozen=True)
class SpectralFeatures:
    """频谱描述（均为非负数，频率单位 Hz）"""
    centroid: float = 0.0
    rolloff: float = 0.0
    flux: float = 0.0
    flatness: float = 0.0
    bandwidth: float = 0.0

    def to_dict(self) -> dict:
        return {
            'centroid': self.centroid,
            'rolloff': self.rolloff,
            'flux': self.flux,
            'flatness': self.flatness,
            'bandwidth': self.bandwidth,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SpectralFeatures':
        return cls(**{key: float(data.get(key, 0.0)) for key in
                      ('centroid', 'rolloff', 'flux', 'flatness', 'bandwidth')})


@dataclass(frozen=True, eq=False)
class TemporalFeatures:
    """时域特征"""
    zero_crossing_rate: float
    energy_contour: np.ndarray  # 每个子帧的能量


@dataclass(frozen=True, eq=False)
class VoiceFeatures:
    """
    单帧或单个校准样本的声学特征

    cepstral 长度固定为 13，voiceprint 长度固定为 256，
    所有实例之间可以直接做向量比较。
    """
    pitch: PitchFeatures
    spectral: SpectralFeatures
    cepstral: np.ndarray  # (13,)
    temporal: TemporalFeatures
    voiceprint: np.ndarray  # (256,)

    def arrays(self) -> Dict[str, np.ndarray]:
        """数组字段，供 NPZ 存储使用"""
        return {
            'cepstral': np.asarray(self.cepstral, dtype=np.float64),
            'voiceprint': np.asarray(self.voiceprint, dtype=np.float64),
            'energy_contour': np.asarray(self.temporal.energy_contour, dtype=np.float64),
        }

    def to_dict(self, include_arrays: bool = True) -> dict:
        """
        转换为字典

        Args:
            include_arrays: 是否包含数组字段（False 时数组需另行保存）
        """
        data = {
            'pitch': self.pitch.to_dict(),
            'spectral': self.spectral.to_dict(),
            'temporal': {'zero_crossing_rate': self.temporal.zero_crossing_rate},
        }
        if include_arrays:
            arrays = self.arrays()
            data['cepstral'] = arrays['cepstral'].tolist()
            data['voiceprint'] = arrays['voiceprint'].tolist()
            data['temporal']['energy_contour'] = arrays['energy_contour'].tolist()
        return data

    @classmethod
    def from_dict(cls, data: dict, arrays: Optional[Dict[str, np.ndarray]] = None) -> 'VoiceFeatures':
        """从字典创建实例，数组优先取自 arrays 参数"""
        source = arrays if arrays is not None else {
            'cepstral': data['cepstral'],
            'voiceprint': data['voiceprint'],
            'energy_contour': data['temporal']['energy_contour'],
        }
        return cls(
            pitch=PitchFeatures.from_dict(data['pitch']),
            spectral=SpectralFeatures.from_dict(data['spectral']),
            cepstral=np.asarray(source['cepstral'], dtype=np.float64),
            temporal=TemporalFeatures(
                zero_crossing_rate=float(data['temporal']['zero_crossing_rate']),
                energy_contour=np.asarray(source['energy_contour'], dtype=np.float64),
            ),
            voiceprint=np.asarray(source['voiceprint'], dtype=np.float64),
        )


# ===== 声纹档案 =====

@dataclass(frozen=True, eq=False)
class VoiceProfile:
    """
    说话人声纹档案

    由一次完成的校准会话生成，存储后不可修改，只能被新的校准整体替换。
    """
    speaker: Speaker
    features: VoiceFeatures  # 代表性特征模板
    quality: float  # 样本平均清晰度 [0, 1]
    tier: EnrollmentTier = EnrollmentTier.QUICK
    sample_count: int = 0
    total_duration_ms: float = 0.0
    consistency: float = 1.0  # 样本之间的平均相似度
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    version: str = "1.0"

    def touch(self, now: Optional[float] = None) -> 'VoiceProfile':
        """返回更新了最后使用时间的副本"""
        return replace(self, last_used=time.time() if now is None else now)

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def to_dict(self, include_arrays: bool = True) -> dict:
        return {
            'speaker': self.speaker.value,
            'features': self.features.to_dict(include_arrays=include_arrays),
            'quality': self.quality,
            'tier': self.tier.value,
            'sample_count': self.sample_count,
            'total_duration_ms': self.total_duration_ms,
            'consistency': self.consistency,
            'created_at': self.created_at,
            'last_used': self.last_used,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict, arrays: Optional[Dict[str, np.ndarray]] = None) -> 'VoiceProfile':
        return cls(
            speaker=Speaker(data['speaker']),
            features=VoiceFeatures.from_dict(data['features'], arrays),
            quality=float(data['quality']),
            tier=EnrollmentTier(data.get('tier', EnrollmentTier.QUICK.value)),
            sample_count=int(data.get('sample_count', 0)),
            total_duration_ms=float(data.get('total_duration_ms', 0.0)),
            consistency=float(data.get('consistency', 1.0)),
            created_at=float(data['created_at']),
            last_used=float(data.get('last_used', data['created_at'])),
            version=data.get('version', '1.0'),
        )


@dataclass(frozen=True, eq=False)
class CoupleProfile:
    """
    一对伴侣的声纹档案

    accuracy 为两位说话人样本平均质量的均值
    """
    couple_id: str
    name: str
    profile_a: VoiceProfile
    profile_b: VoiceProfile
    accuracy: float
    last_calibrated: float = field(default_factory=time.time)

    def profiles(self) -> Dict[Speaker, VoiceProfile]:
        return {Speaker.A: self.profile_a, Speaker.B: self.profile_b}

    def to_dict(self, include_arrays: bool = True) -> dict:
        return {
            'couple_id': self.couple_id,
            'name': self.name,
            'profile_a': self.profile_a.to_dict(include_arrays=include_arrays),
            'profile_b': self.profile_b.to_dict(include_arrays=include_arrays),
            'accuracy': self.accuracy,
            'last_calibrated': self.last_calibrated,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        arrays: Optional[Dict[Speaker, Dict[str, np.ndarray]]] = None
    ) -> 'CoupleProfile':
        arrays = arrays or {}
        return cls(
            couple_id=data['couple_id'],
            name=data['name'],
            profile_a=VoiceProfile.from_dict(data['profile_a'], arrays.get(Speaker.A)),
            profile_b=VoiceProfile.from_dict(data['profile_b'], arrays.get(Speaker.B)),
            accuracy=float(data['accuracy']),
            last_calibrated=float(data['last_calibrated']),
        )


# ===== 检测结果 =====

@dataclass(frozen=True)
class SpeakerDecision:
    """
    说话人判定

    基础检测器与融合策略共用的结果结构
    """
    speaker: Optional[Speaker]  # None 表示无法识别说话人（不同于静音）
    confidence: float  # 置信度 [0, 1]
    method: str
    reasoning: str
    timestamp: float


@dataclass(frozen=True)
class DetectionQuality:
    """融合结果的质量子指标"""
    profile_match_quality: float = 0.0  # 最佳声纹相似度
    base_agreement: float = 0.0  # 与基础检测器是否一致 (1.0 / 0.0)
    overall_quality: float = 0.0  # 等于最终置信度


@dataclass(frozen=True)
class DetectionResult(SpeakerDecision):
    """
    单次融合决策的输出

    每个语音帧生成一个新的实例，本模块不做持久化
    """
    is_calibrated: bool = False
    profile_similarities: Dict[Speaker, float] = field(default_factory=dict)
    quality: DetectionQuality = field(default_factory=DetectionQuality)
    base_result: Optional[SpeakerDecision] = None

    def __str__(self):
        speaker = self.speaker.value if self.speaker else "none"
        return (f"DetectionResult(speaker={speaker}, confidence={self.confidence:.3f}, "
                f"method={self.method})")


@dataclass
class DetectionStats:
    """检测统计（进程生命周期内累计，仅显式清理时重置）"""
    total_detections: int = 0
    calibrated_detections: int = 0
    uncalibrated_detections: int = 0
    avg_confidence: float = 0.0
    profile_matches: Dict[Speaker, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CalibrationStatusInfo:
    """校准状态，供校准界面使用"""
    is_calibrated: bool
    profile_present: Dict[Speaker, bool]
    needs_recalibration: bool
    profile_quality: float
    last_calibration_time: float = 0.0


@dataclass(frozen=True)
class RecalibrationRecommendation:
    should_recalibrate: bool
    reason: RecalibrationReason
    urgency: Urgency
    expected_improvement: float


# ===== 校准会话 =====

@dataclass(frozen=True)
class AudioQualityAnalysis:
    """校准样本的音频质量分析"""
    rms: float
    snr_db: float
    clarity_score: float  # [0, 1]
    dynamic_range: float
    duration_ms: float
    sample_rate: int
    peak_amplitude: float
    is_quality_sufficient: bool


@dataclass(frozen=True, eq=False)
class CalibrationSample:
    """已接受的校准样本（不保留原始音频）"""
    sample_id: str
    speaker: Speaker
    sample_type: SampleType
    sample_rate: int
    duration_ms: float
    timestamp: float
    quality: AudioQualityAnalysis
    features: VoiceFeatures


@dataclass(frozen=True)
class SpeakerProgress:
    samples_collected: int
    samples_needed: int
    progress: float  # [0, 1]
    is_complete: bool


@dataclass(frozen=True)
class CalibrationProgress:
    per_speaker: Dict[Speaker, SpeakerProgress]
    overall_progress: float
    is_complete: bool


@dataclass(frozen=True)
class SessionQualityMetrics:
    total_duration_ms: float = 0.0
    avg_snr_db: float = 0.0
    avg_clarity: float = 0.0
    completion_rate: float = 0.0


@dataclass(frozen=True)
class CalibrationSampleResult:
    """单个校准样本的录入结果"""
    success: bool
    quality: AudioQualityAnalysis
    progress: CalibrationProgress
    sample: Optional[CalibrationSample] = None
    reason: Optional[str] = None
    recommendation: Optional[str] = None


@dataclass(frozen=True)
class CalibrationSpeakerResult:
    success: bool = False
    sample_count: int = 0
    avg_quality: float = 0.0
    profile: Optional[VoiceProfile] = None


@dataclass(frozen=True)
class CalibrationCompletionResult:
    """校准完成结果；只有两位说话人都生成档案时 success 为 True"""
    success: bool
    results: Dict[Speaker, CalibrationSpeakerResult]
    session_duration_ms: float
    recommendation: str
    couple_profile: Optional[CoupleProfile] = None


# ===== 配置 =====

@dataclass
class FeatureConfig:
    """特征提取配置"""
    fft_size: int = 1024  # 频谱分析窗口
    min_pitch_hz: float = 80.0
    max_pitch_hz: float = 400.0
    correlation_window: int = 1024  # 自相关求和的最大样本数
    energy_frame_size: int = 1024  # 能量轮廓子帧大小
    n_mfcc: int = CEPSTRAL_DIM
    mfcc_n_fft: int = 512
    mfcc_hop_length: int = 256
    n_mels: int = 40
    min_sample_rate: int = 8000
    max_sample_rate: int = 96000

    def validate(self):
        """验证配置有效性"""
        if not (0 < self.min_pitch_hz < self.max_pitch_hz):
            raise ValueError(f"pitch range invalid: [{self.min_pitch_hz}, {self.max_pitch_hz}]")
        if self.fft_size < 64 or self.correlation_window < 64:
            raise ValueError(f"fft_size/correlation_window too small: {self.fft_size}/{self.correlation_window}")
        if self.n_mfcc != CEPSTRAL_DIM:
            raise ValueError(f"n_mfcc must be {CEPSTRAL_DIM}, got {self.n_mfcc}")
        if not (0 < self.min_sample_rate <= self.max_sample_rate):
            raise ValueError(f"sample rate range invalid: [{self.min_sample_rate}, {self.max_sample_rate}]")


@dataclass
class SimilarityConfig:
    """相似度权重与归一化尺度"""
    pitch_weight: float = 0.25
    spectral_weight: float = 0.35
    cepstral_weight: float = 0.25
    voiceprint_weight: float = 0.15
    pitch_scale_hz: float = 200.0
    centroid_scale_hz: float = 1000.0
    rolloff_scale_hz: float = 2000.0
    bandwidth_scale_hz: float = 500.0
    cepstral_distance_scale: float = 2.0

    def validate(self):
        weights = [self.pitch_weight, self.spectral_weight, self.cepstral_weight, self.voiceprint_weight]
        if any(w < 0 for w in weights):
            raise ValueError(f"weights must be non-negative, got {weights}")
        if abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1.0, got {sum(weights):.4f}")
        scales = [self.pitch_scale_hz, self.centroid_scale_hz, self.rolloff_scale_hz,
                  self.bandwidth_scale_hz, self.cepstral_distance_scale]
        if any(s <= 0 for s in scales):
            raise ValueError(f"scales must be positive, got {scales}")


@dataclass
class FusionConfig:
    """
    融合策略阈值

    这些阈值为经验值，保留为可配置参数以便重新标定
    """
    profile_match_threshold: float = 0.8
    voice_similarity_threshold: float = 0.75
    base_confidence_threshold: float = 0.6
    calibration_confidence_boost: float = 0.15
    verified_boost_ratio: float = 0.5  # 验证通过时加成 = boost * ratio
    conflict_penalty: float = 0.8

    def validate(self):
        for name in ('profile_match_threshold', 'voice_similarity_threshold',
                     'base_confidence_threshold', 'calibration_confidence_boost',
                     'verified_boost_ratio', 'conflict_penalty'):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0, 1], got {value}")


@dataclass
class CalibrationConfig:
    """校准参数（针对普通麦克风放宽）"""
    quick_target_samples: int = 3
    extended_target_samples: int = 8
    min_sample_duration_ms: float = 3000.0
    min_snr_db: float = 10.0
    min_clarity_score: float = 0.15
    profile_max_age_days: float = 7.0

    def target_samples(self, tier: EnrollmentTier) -> int:
        if EnrollmentTier(tier) is EnrollmentTier.EXTENDED:
            return self.extended_target_samples
        return self.quick_target_samples

    def validate(self):
        if self.quick_target_samples < 1 or self.extended_target_samples < self.quick_target_samples:
            raise ValueError(f"invalid target samples: quick={self.quick_target_samples}, "
                             f"extended={self.extended_target_samples}")
        if not (0.0 <= self.min_clarity_score <= 1.0):
            raise ValueError(f"min_clarity_score must be in [0, 1], got {self.min_clarity_score}")
        if self.min_sample_duration_ms < 0 or self.profile_max_age_days <= 0:
            raise ValueError("min_sample_duration_ms must be >= 0 and profile_max_age_days > 0")


SPEAKERS: List[Speaker] = [Speaker.A, Speaker.B]
