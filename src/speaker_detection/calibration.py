"""
校准会话管理

采集两位说话人的校准样本，评估录音质量，并在完成时生成声纹档案
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import numpy as np

from .exceptions import UnknownSessionError, DuplicateSessionError, SessionClosedError
from .feature_extractor import FeatureExtractor
from .models import (
    CalibrationConfig, EnrollmentTier, SampleType, Speaker, SPEAKERS,
    AudioQualityAnalysis, CalibrationSample, CalibrationSampleResult,
    CalibrationProgress, SpeakerProgress, SessionQualityMetrics,
    CalibrationCompletionResult, CalibrationSpeakerResult,
    VoiceFeatures, VoiceProfile, CoupleProfile,
    PitchFeatures, SpectralFeatures, TemporalFeatures, CEPSTRAL_DIM, VOICEPRINT_DIM,
)
from .profile_store import ProfileStore

logger = logging.getLogger(__name__)

LOW_VOLUME_RMS = 0.01


class AudioQualityAnalyzer:
    """
    校准录音质量分析

    阈值针对普通电脑 / 网页麦克风放宽：SNR ≥ 10dB、清晰度 ≥ 0.15、时长 ≥ 3 秒
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()

    def analyze(self, audio: np.ndarray, sample_rate: int) -> AudioQualityAnalysis:
        """
        分析录音质量

        Args:
            audio: float 音频
            sample_rate: 采样率

        Returns:
            AudioQualityAnalysis
        """
        x = np.abs(np.asarray(audio, dtype=np.float64))
        duration_ms = x.size / sample_rate * 1000.0

        if x.size == 0:
            return AudioQualityAnalysis(
                rms=0.0, snr_db=-20.0, clarity_score=0.0, dynamic_range=0.0,
                duration_ms=0.0, sample_rate=sample_rate, peak_amplitude=0.0,
                is_quality_sufficient=False,
            )

        rms = float(np.sqrt(np.mean(np.square(x))))
        peak = float(np.max(x))

        # 噪声底：抽样后取 |x| 的第 5 百分位
        step = max(1, x.size // 1000)
        sampled = np.sort(x[::step])
        noise_floor = float(sampled[int(np.floor(sampled.size * 0.05))])

        dynamic_range = 20.0 * np.log10(peak / max(rms, 0.001)) if peak > 0 else 0.0
        snr_db = 20.0 * np.log10(rms / max(noise_floor, 0.001)) if rms > 0 else -20.0
        snr_db = float(np.clip(snr_db, -20.0, 40.0))

        base_clarity = min(1.0, rms * 10.0)
        dynamic_bonus = min(0.3, (peak - rms) * 2.0)
        clarity = float(np.clip(base_clarity + dynamic_bonus, 0.0, 1.0))

        return AudioQualityAnalysis(
            rms=rms,
            snr_db=snr_db,
            clarity_score=clarity,
            dynamic_range=float(dynamic_range),
            duration_ms=duration_ms,
            sample_rate=sample_rate,
            peak_amplitude=peak,
            is_quality_sufficient=(snr_db >= self.config.min_snr_db
                                   and clarity >= self.config.min_clarity_score),
        )

    def is_acceptable(self, quality: AudioQualityAnalysis) -> bool:
        return (quality.snr_db >= self.config.min_snr_db
                and quality.clarity_score >= self.config.min_clarity_score
                and quality.duration_ms >= self.config.min_sample_duration_ms)

    def recommendation(self, quality: AudioQualityAnalysis) -> str:
        """根据质量分析给出重录建议"""
        cfg = self.config
        if quality.snr_db < cfg.min_snr_db:
            return f"环境太嘈杂 ({quality.snr_db:.1f}dB)，请换到安静的地方或靠近麦克风"
        if quality.clarity_score < cfg.min_clarity_score:
            return f"声音清晰度低 ({quality.clarity_score * 100:.0f}%)，请说得更清楚、更大声"
        if quality.duration_ms < cfg.min_sample_duration_ms:
            return (f"录音太短 ({quality.duration_ms / 1000:.1f}秒)，"
                    f"请至少说 {cfg.min_sample_duration_ms / 1000:.0f} 秒")
        if quality.rms < LOW_VOLUME_RMS:
            return "麦克风几乎听不到声音，请检查权限并大声一些"
        return "请重新录制，说话清晰、音量适中"


@dataclass(eq=False)
class CalibrationSession:
    """进行中的校准会话（不持久化）"""
    session_id: str
    tier: EnrollmentTier
    target_samples: int
    started_at: float = field(default_factory=time.time)
    samples: Dict[Speaker, List[CalibrationSample]] = field(
        default_factory=lambda: {speaker: [] for speaker in SPEAKERS})
    in_flight: int = 0
    closed: bool = False
    condition: threading.Condition = field(default_factory=threading.Condition)


class CalibrationManager:
    """
    校准会话管理器

    同一会话内两位说话人可以并发录入样本；
    complete() 会等待所有进行中的录入结束后再生成档案。
    """

    def __init__(
        self,
        feature_extractor: FeatureExtractor,
        profile_store: ProfileStore,
        config: Optional[CalibrationConfig] = None
    ):
        """
        初始化校准会话管理器

        Args:
            feature_extractor: 特征提取引擎
            profile_store: 档案存储，校准成功时整体替换
            config: 校准配置
        """
        self.config = config or CalibrationConfig()
        self.config.validate()
        self.feature_extractor = feature_extractor
        self.profile_store = profile_store
        self.quality_analyzer = AudioQualityAnalyzer(self.config)

        self._sessions: Dict[str, CalibrationSession] = {}
        self._lock = threading.Lock()

        logger.info(f"CalibrationManager 初始化: quick={self.config.quick_target_samples}, "
                    f"extended={self.config.extended_target_samples}, "
                    f"min_snr={self.config.min_snr_db}dB, min_clarity={self.config.min_clarity_score}")

    # ===== 会话生命周期 =====

    def start(self, session_id: Optional[str] = None,
              tier: EnrollmentTier = EnrollmentTier.QUICK) -> str:
        """
        开始校准会话

        Args:
            session_id: 会话ID，默认自动生成
            tier: 注册档位（quick / extended）

        Returns:
            会话ID

        Raises:
            DuplicateSessionError: 会话ID已存在
        """
        session_id = session_id or f"calibration_{uuid.uuid4().hex[:12]}"
        tier = EnrollmentTier(tier)

        with self._lock:
            if session_id in self._sessions:
                raise DuplicateSessionError(session_id)
            self._sessions[session_id] = CalibrationSession(
                session_id=session_id,
                tier=tier,
                target_samples=self.config.target_samples(tier),
            )

        logger.info(f"开始校准会话: session_id={session_id}, tier={tier.value}, "
                    f"target={self.config.target_samples(tier)}/人")
        return session_id

    def _get_session(self, session_id: str) -> CalibrationSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def _take_session(self, session_id: str) -> CalibrationSession:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def record_sample(
        self,
        session_id: str,
        speaker: Speaker,
        sample_type: SampleType,
        audio_data,
        sample_rate: int
    ) -> CalibrationSampleResult:
        """
        录入一个校准样本

        质量不达标不是错误：返回 success=False、原因和建议，进度不变。

        Args:
            session_id: 会话ID
            speaker: 说话人
            sample_type: 提示语类型
            audio_data: 单声道音频
            sample_rate: 采样率

        Returns:
            CalibrationSampleResult

        Raises:
            UnknownSessionError: 会话不存在
            SessionClosedError: 会话正在完成或已放弃
            InvalidAudioError: 输入音频不合法
        """
        speaker = Speaker(speaker)
        sample_type = SampleType(sample_type)
        session = self._get_session(session_id)

        with session.condition:
            if session.closed:
                raise SessionClosedError(session_id)
            session.in_flight += 1

        try:
            audio = self.feature_extractor.prepare_audio(audio_data, sample_rate)
            quality = self.quality_analyzer.analyze(audio, sample_rate)

            if not self.quality_analyzer.is_acceptable(quality):
                recommendation = self.quality_analyzer.recommendation(quality)
                logger.warning(f"校准样本质量不足: session={session_id}, speaker={speaker.value}, "
                               f"snr={quality.snr_db:.1f}dB, clarity={quality.clarity_score:.2f}, "
                               f"duration={quality.duration_ms:.0f}ms")
                return CalibrationSampleResult(
                    success=False,
                    quality=quality,
                    progress=self.get_progress(session_id, session),
                    reason="quality_insufficient",
                    recommendation=recommendation,
                )

            features = self.feature_extractor.extract(audio, sample_rate)
            sample = CalibrationSample(
                sample_id=f"{session_id}_{speaker.value}_{uuid.uuid4().hex[:8]}",
                speaker=speaker,
                sample_type=sample_type,
                sample_rate=sample_rate,
                duration_ms=quality.duration_ms,
                timestamp=time.time(),
                quality=quality,
                features=features,
            )

            with session.condition:
                session.samples[speaker].append(sample)

            logger.info(f"录入校准样本: id={sample.sample_id}, snr={quality.snr_db:.1f}dB, "
                        f"clarity={quality.clarity_score:.2f}, rms={quality.rms:.4f}")

            return CalibrationSampleResult(
                success=True,
                quality=quality,
                progress=self.get_progress(session_id, session),
                sample=sample,
            )

        finally:
            with session.condition:
                session.in_flight -= 1
                session.condition.notify_all()

    def complete(self, session_id: str, profile_name: Optional[str] = None) -> CalibrationCompletionResult:
        """
        完成校准会话

        为每位至少有一个合格样本的说话人生成档案；只有两人都生成档案时才替换档案存储。
        无论成功与否，会话都会被丢弃。

        Args:
            session_id: 会话ID
            profile_name: 双人档案名称

        Returns:
            CalibrationCompletionResult

        Raises:
            UnknownSessionError: 会话不存在
        """
        session = self._get_session(session_id)

        # 先关闭会话拒绝新样本，再等待进行中的录入结束
        with session.condition:
            if session.closed:
                raise SessionClosedError(session_id)
            session.closed = True
            session.condition.wait_for(lambda: session.in_flight == 0)
            samples = {speaker: list(items) for speaker, items in session.samples.items()}

        self._take_session(session_id)

        now = time.time()
        profiles: Dict[Speaker, VoiceProfile] = {}
        results: Dict[Speaker, CalibrationSpeakerResult] = {}

        for speaker in SPEAKERS:
            speaker_samples = samples.get(speaker, [])
            if not speaker_samples:
                logger.info(f"说话人 {speaker.value} 没有合格样本，跳过")
                results[speaker] = CalibrationSpeakerResult()
                continue

            profile = self.build_profile(speaker, speaker_samples, session.tier, now)
            profiles[speaker] = profile
            results[speaker] = CalibrationSpeakerResult(
                success=True,
                sample_count=len(speaker_samples),
                avg_quality=profile.quality,
                profile=profile,
            )
            logger.info(f"说话人 {speaker.value} 档案生成成功: {len(speaker_samples)} 个样本, "
                        f"平均质量 {profile.quality:.2f}")

        success = all(speaker in profiles for speaker in SPEAKERS)
        couple_profile = None

        if success:
            self.profile_store.replace_all(profiles, calibrated_at=now)
            couple_profile = CoupleProfile(
                couple_id=uuid.uuid4().hex,
                name=profile_name or session_id,
                profile_a=profiles[Speaker.A],
                profile_b=profiles[Speaker.B],
                accuracy=(results[Speaker.A].avg_quality + results[Speaker.B].avg_quality) / 2,
                last_calibrated=now,
            )

        logger.info(f"校准会话{'完成' if success else '未完成'}: session_id={session_id}")

        return CalibrationCompletionResult(
            success=success,
            results=results,
            session_duration_ms=(now - session.started_at) * 1000.0,
            recommendation='ready_for_conversation' if success else 'consider_recalibration',
            couple_profile=couple_profile,
        )

    def abandon(self, session_id: str):
        """
        放弃校准会话，不影响档案存储

        Raises:
            UnknownSessionError: 会话不存在
        """
        session = self._take_session(session_id)
        with session.condition:
            session.closed = True
        logger.info(f"校准会话已放弃: session_id={session_id}")

    # ===== 进度与指标 =====

    def get_progress(self, session_id: str,
                     session: Optional[CalibrationSession] = None) -> CalibrationProgress:
        """
        计算校准进度

        每人进度 = min(1, 已接受样本数 / 目标数)，总进度为两人均值
        """
        session = session or self._get_session(session_id)
        with session.condition:
            counts = {speaker: len(session.samples[speaker]) for speaker in SPEAKERS}

        per_speaker = {}
        for speaker, count in counts.items():
            per_speaker[speaker] = SpeakerProgress(
                samples_collected=count,
                samples_needed=session.target_samples,
                progress=min(1.0, count / session.target_samples),
                is_complete=count >= session.target_samples,
            )

        overall = sum(p.progress for p in per_speaker.values()) / len(per_speaker)
        return CalibrationProgress(
            per_speaker=per_speaker,
            overall_progress=overall,
            is_complete=all(p.is_complete for p in per_speaker.values()),
        )

    def get_session_metrics(self, session_id: str) -> SessionQualityMetrics:
        """会话质量指标：总时长、平均 SNR、平均清晰度、完成率"""
        session = self._get_session(session_id)
        with session.condition:
            accepted = [s for speaker in SPEAKERS for s in session.samples[speaker]]

        progress = self.get_progress(session_id, session)
        if not accepted:
            return SessionQualityMetrics(completion_rate=progress.overall_progress)

        return SessionQualityMetrics(
            total_duration_ms=sum(s.duration_ms for s in accepted),
            avg_snr_db=float(np.mean([s.quality.snr_db for s in accepted])),
            avg_clarity=float(np.mean([s.quality.clarity_score for s in accepted])),
            completion_rate=progress.overall_progress,
        )

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def clear(self):
        """放弃所有进行中的会话"""
        for session_id in self.active_sessions():
            try:
                self.abandon(session_id)
            except UnknownSessionError:
                pass

    # ===== 档案构建 =====

    def build_profile(
        self,
        speaker: Speaker,
        samples: List[CalibrationSample],
        tier: EnrollmentTier = EnrollmentTier.QUICK,
        now: Optional[float] = None
    ) -> VoiceProfile:
        """
        由合格样本聚合生成声纹档案

        Args:
            speaker: 说话人
            samples: 至少一个合格样本
            tier: 注册档位
            now: 生成时间

        Returns:
            VoiceProfile
        """
        if not samples:
            raise ValueError("至少需要一个样本才能生成档案")

        now = time.time() if now is None else now
        features = [s.features for s in samples]
        pitches = np.array([f.pitch.fundamental for f in features], dtype=np.float64)

        spectral = SpectralFeatures(**{
            name: float(np.mean([getattr(f.spectral, name) for f in features]))
            for name in ('centroid', 'rolloff', 'flux', 'flatness', 'bandwidth')
        })

        template = VoiceFeatures(
            pitch=PitchFeatures(
                fundamental=float(np.mean(pitches)),
                range=(float(np.min(pitches)), float(np.max(pitches))),
                variance=float(np.var(pitches)),
            ),
            spectral=spectral,
            cepstral=self._mean_vector([f.cepstral for f in features], CEPSTRAL_DIM),
            temporal=TemporalFeatures(
                zero_crossing_rate=float(np.mean([f.temporal.zero_crossing_rate for f in features])),
                energy_contour=np.zeros(0, dtype=np.float64),
            ),
            voiceprint=self._mean_vector([f.voiceprint for f in features], VOICEPRINT_DIM),
        )

        return VoiceProfile(
            speaker=speaker,
            features=template,
            quality=float(np.mean([s.quality.clarity_score for s in samples])),
            tier=tier,
            sample_count=len(samples),
            total_duration_ms=float(sum(s.duration_ms for s in samples)),
            consistency=self.compute_consistency(features),
            created_at=now,
            last_used=now,
        )

    @staticmethod
    def _mean_vector(vectors: List[np.ndarray], dim: int) -> np.ndarray:
        stacked = np.zeros((len(vectors), dim), dtype=np.float64)
        for row, vector in enumerate(vectors):
            vector = np.asarray(vector, dtype=np.float64)[:dim]
            stacked[row, :vector.size] = vector
        return stacked.mean(axis=0)

    @staticmethod
    def compute_consistency(features: List[VoiceFeatures]) -> float:
        """样本两两之间基频 / 质心粗相似度的均值，少于两个样本时为 1.0"""
        if len(features) < 2:
            return 1.0

        scores = []
        for i in range(len(features) - 1):
            for j in range(i + 1, len(features)):
                pitch_sim = 1.0 - abs(features[i].pitch.fundamental - features[j].pitch.fundamental) / 200.0
                centroid_sim = 1.0 - abs(features[i].spectral.centroid - features[j].spectral.centroid) / 1000.0
                scores.append(min(1.0, max(0.0, (pitch_sim + centroid_sim) / 2)))
        return float(np.mean(scores))
