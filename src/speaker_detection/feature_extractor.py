"""
声学特征提取引擎

从单帧音频中提取基频、频谱、倒谱、时域特征和声纹向量
"""

import logging
import threading
from typing import Dict, Optional
import numpy as np
import torch
import torchaudio

from vad.audio_utils import to_float_audio

from .exceptions import InvalidAudioError
from .models import (
    FeatureConfig, VoiceFeatures, PitchFeatures, SpectralFeatures,
    TemporalFeatures, CEPSTRAL_DIM, VOICEPRINT_DIM,
)

logger = logging.getLogger(__name__)

VOICEPRINT_HEADER = 3  # 声纹向量前 3 位为归一化的基频 / 质心 / 滚降


class FeatureExtractor:
    """
    声学特征提取引擎

    所有特征都是确定性的：同一输入总是得到同一输出。
    过短的帧退化为默认值，不抛异常。
    """

    def __init__(self, config: Optional[FeatureConfig] = None, device: str = "cpu"):
        """
        初始化特征提取引擎

        Args:
            config: 特征提取配置
            device: MFCC 计算设备
        """
        self.config = config or FeatureConfig()
        self.config.validate()
        self.device = torch.device(device)

        # 按采样率缓存 MFCC 变换
        self._mfcc_transforms: Dict[int, torchaudio.transforms.MFCC] = {}
        self._mfcc_lock = threading.Lock()

        logger.info(f"FeatureExtractor 初始化: fft_size={self.config.fft_size}, "
                    f"pitch=[{self.config.min_pitch_hz}, {self.config.max_pitch_hz}]Hz, "
                    f"n_mfcc={self.config.n_mfcc}, device={self.device}")

    # ===== 输入校验 =====

    def prepare_audio(self, audio_data, sample_rate: int) -> np.ndarray:
        """
        校验并转换输入音频

        Args:
            audio_data: 单声道音频，float [-1, 1] 或整型 PCM
            sample_rate: 采样率

        Returns:
            一维 float32 数组（可能为空）

        Raises:
            InvalidAudioError: 采样率不支持、多声道、含 NaN/Inf 或浮点越界
        """
        if not isinstance(sample_rate, (int, np.integer)) or isinstance(sample_rate, bool):
            raise InvalidAudioError(f"采样率必须是整数: {sample_rate!r}")
        if not (self.config.min_sample_rate <= sample_rate <= self.config.max_sample_rate):
            raise InvalidAudioError(
                f"不支持的采样率: {sample_rate}Hz "
                f"(支持 {self.config.min_sample_rate}-{self.config.max_sample_rate}Hz)"
            )

        try:
            audio = to_float_audio(audio_data)
        except (ValueError, TypeError) as e:
            raise InvalidAudioError(str(e)) from e

        if audio.size == 0:
            return audio
        if not np.all(np.isfinite(audio)):
            raise InvalidAudioError("音频数据包含 NaN 或 Inf")
        peak = float(np.max(np.abs(audio)))
        if peak > 1.0:
            raise InvalidAudioError(f"浮点音频超出 [-1, 1] 范围: peak={peak:.3f}")

        return audio

    # ===== 特征提取 =====

    def extract(self, audio_data, sample_rate: int) -> VoiceFeatures:
        """
        提取完整特征

        Args:
            audio_data: 单声道音频
            sample_rate: 采样率

        Returns:
            VoiceFeatures
        """
        audio = self.prepare_audio(audio_data, sample_rate)

        fundamental = self.estimate_pitch(audio, sample_rate)
        spectral = self.analyze_spectrum(audio, sample_rate)

        features = VoiceFeatures(
            pitch=PitchFeatures(
                fundamental=fundamental,
                range=(fundamental * 0.8, fundamental * 1.2),
                variance=0.0,
            ),
            spectral=spectral,
            cepstral=self.compute_cepstral(audio, sample_rate),
            temporal=TemporalFeatures(
                zero_crossing_rate=self.zero_crossing_rate(audio),
                energy_contour=self.energy_contour(audio),
            ),
            voiceprint=self.build_voiceprint(audio, fundamental, spectral),
        )

        logger.debug(f"提取特征: n={audio.size}, f0={fundamental:.1f}Hz, "
                     f"centroid={spectral.centroid:.1f}Hz")
        return features

    def _period_bounds(self, sample_rate: int):
        min_period = int(np.floor(sample_rate / self.config.max_pitch_hz))
        max_period = int(np.floor(sample_rate / self.config.min_pitch_hz))
        return max(1, min_period), max_period

    def estimate_pitch(self, audio: np.ndarray, sample_rate: int) -> float:
        """
        自相关法估计基频

        在 80-400Hz 对应的周期范围内计算自相关（每个延迟最多累加 1024 个样本）。
        相关值达到最大值 90% 的局部峰中取最小延迟，避免倍周期误判。
        没有正相关时返回下限周期对应的频率。

        Args:
            audio: float 音频
            sample_rate: 采样率

        Returns:
            基频 (Hz)
        """
        min_period, max_period = self._period_bounds(sample_rate)
        fallback = sample_rate / min_period

        x = np.asarray(audio, dtype=np.float64)
        last_period = min(max_period, x.size - 1)
        if last_period < min_period:
            return float(fallback)

        periods = np.arange(min_period, last_period + 1)
        correlations = np.empty(periods.size, dtype=np.float64)
        for idx, period in enumerate(periods):
            n = min(x.size - period, self.config.correlation_window)
            correlations[idx] = np.dot(x[:n], x[period:period + n])

        best = float(np.max(correlations))
        if best <= 0:
            return float(fallback)

        # 不直接取 argmax：纯正弦在 2 倍周期处的相关值几乎相同，取最小延迟避免低八度
        floor = 0.9 * best
        best_period = int(periods[int(np.argmax(correlations))])
        for idx in range(periods.size):
            value = correlations[idx]
            if value < floor:
                continue
            left = correlations[idx - 1] if idx > 0 else -np.inf
            right = correlations[idx + 1] if idx + 1 < periods.size else -np.inf
            if value >= left and value >= right:
                best_period = int(periods[idx])
                break

        return float(sample_rate / best_period)

    def analyze_spectrum(self, audio: np.ndarray, sample_rate: int) -> SpectralFeatures:
        """
        频谱分析

        对前 fft_size 个样本加汉宁窗做实数 FFT，计算频谱质心（Hz）。
        滚降和带宽取质心的固定倍数，保证档案与实时帧可比。

        Args:
            audio: float 音频
            sample_rate: 采样率

        Returns:
            SpectralFeatures
        """
        fft_size = self.config.fft_size
        window = np.asarray(audio[:fft_size], dtype=np.float64)
        if window.size < 2:
            return SpectralFeatures()

        magnitude = np.abs(np.fft.rfft(window * np.hanning(window.size), n=fft_size))
        freqs = np.fft.rfftfreq(fft_size, d=1.0 / sample_rate)

        total = float(np.sum(magnitude))
        if total <= 0:
            return SpectralFeatures()

        centroid = float(np.sum(freqs * magnitude) / total)

        # 频谱通量：前后两个半窗之间的正向幅度变化
        half = window.size // 2
        flux = 0.0
        if half >= 2:
            first = np.abs(np.fft.rfft(window[:half], n=fft_size // 2))
            second = np.abs(np.fft.rfft(window[half:2 * half], n=fft_size // 2))
            flux = float(np.mean(np.maximum(0.0, second - first)))

        # 频谱平坦度：几何均值 / 算术均值
        eps = 1e-12
        flatness = float(np.exp(np.mean(np.log(magnitude + eps))) / (np.mean(magnitude) + eps))

        return SpectralFeatures(
            centroid=centroid,
            rolloff=centroid * 1.5,
            flux=flux,
            flatness=min(1.0, max(0.0, flatness)),
            bandwidth=centroid * 0.3,
        )

    def _get_mfcc_transform(self, sample_rate: int) -> torchaudio.transforms.MFCC:
        with self._mfcc_lock:
            transform = self._mfcc_transforms.get(sample_rate)
            if transform is None:
                transform = torchaudio.transforms.MFCC(
                    sample_rate=sample_rate,
                    n_mfcc=self.config.n_mfcc,
                    melkwargs={
                        'n_fft': self.config.mfcc_n_fft,
                        'hop_length': self.config.mfcc_hop_length,
                        'n_mels': self.config.n_mels,
                    },
                ).to(self.device)
                self._mfcc_transforms[sample_rate] = transform
                logger.debug(f"创建 MFCC 变换: sr={sample_rate}")
            return transform

    def compute_cepstral(self, audio: np.ndarray, sample_rate: int) -> np.ndarray:
        """
        计算 13 维平均 MFCC

        结果做 L2 归一化，任意两个向量的欧氏距离落在 [0, 2]。
        全零输入返回零向量。

        Returns:
            倒谱向量 (numpy array, shape: (13,))
        """
        if audio.size == 0 or not np.any(audio):
            return np.zeros(CEPSTRAL_DIM, dtype=np.float64)

        waveform = torch.from_numpy(np.ascontiguousarray(audio, dtype=np.float32)).unsqueeze(0)

        # 补零到至少一个 FFT 窗口
        if waveform.shape[1] < self.config.mfcc_n_fft:
            padding = self.config.mfcc_n_fft - waveform.shape[1]
            waveform = torch.nn.functional.pad(waveform, (0, padding))

        transform = self._get_mfcc_transform(sample_rate)
        with torch.no_grad():
            mfcc = transform(waveform.to(self.device))  # (1, n_mfcc, time)

        coefficients = mfcc.squeeze(0).mean(dim=-1).cpu().numpy().astype(np.float64)
        norm = np.linalg.norm(coefficients)
        if norm == 0 or not np.isfinite(norm):
            return np.zeros(CEPSTRAL_DIM, dtype=np.float64)
        return coefficients / norm

    @staticmethod
    def zero_crossing_rate(audio: np.ndarray) -> float:
        """过零率：相邻样本符号变化次数 / 样本数"""
        if audio.size < 2:
            return 0.0
        signs = audio >= 0
        crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))
        return crossings / audio.size

    def energy_contour(self, audio: np.ndarray) -> np.ndarray:
        """每个子帧（默认 1024 样本）的 RMS 能量，末尾不足一帧的部分单独计算"""
        frame_size = self.config.energy_frame_size
        if audio.size == 0:
            return np.zeros(0, dtype=np.float64)
        x = np.asarray(audio, dtype=np.float64)
        return np.array([np.sqrt(np.mean(np.square(x[i:i + frame_size])))
                         for i in range(0, x.size, frame_size)], dtype=np.float64)

    def build_voiceprint(self, audio: np.ndarray, pitch: float,
                         spectral: SpectralFeatures) -> np.ndarray:
        """
        生成 256 维声纹向量

        前 3 位为 [pitch/400, centroid/1000, rolloff/2000]，
        其余位置按固定的最近邻下标从原始帧中取样。
        """
        voiceprint = np.zeros(VOICEPRINT_DIM, dtype=np.float64)
        voiceprint[0] = pitch / 400.0
        voiceprint[1] = spectral.centroid / 1000.0
        voiceprint[2] = spectral.rolloff / 2000.0

        if audio.size > 0:
            positions = np.arange(VOICEPRINT_HEADER, VOICEPRINT_DIM)
            indices = np.floor((positions - VOICEPRINT_HEADER) / VOICEPRINT_DIM * audio.size).astype(int)
            voiceprint[VOICEPRINT_HEADER:] = np.asarray(audio, dtype=np.float64)[indices]

        return voiceprint

    def get_model_info(self) -> dict:
        return {
            'fft_size': self.config.fft_size,
            'pitch_range_hz': (self.config.min_pitch_hz, self.config.max_pitch_hz),
            'n_mfcc': self.config.n_mfcc,
            'device': str(self.device),
            'cached_sample_rates': sorted(self._mfcc_transforms),
        }
