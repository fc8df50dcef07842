"""
Correlation and anomaly analysis over performance metric profiles.

Each profile run computes pairwise, pattern-based and lagged correlations,
compares every correlation against a rolling baseline for its metric pair,
and infers a causality direction for strong relationships. Steps fail
independently: an error in one is logged and the others still run.
"""

import logging
import threading
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from config.settings import settings
from core import correlation as stats
from core.events import (
    CORRELATION_ANALYSIS_COMPLETED,
    CORRELATION_ANOMALY_DETECTED,
    EventPublisher,
    LoggingEventPublisher,
    safe_publish,
)
from core.models import new_id

logger = logging.getLogger(__name__)

MIN_BASELINE_SAMPLES = 2
BASELINE_RETENTION = timedelta(days=7)


class MetricType(str, Enum):
    CPU_USAGE = "cpu_usage"
    MEMORY_USAGE = "memory_usage"
    RESPONSE_TIME = "response_time"
    THROUGHPUT = "throughput"
    ERROR_RATE = "error_rate"
    NETWORK_IO = "network_io"
    DATABASE_QUERY_TIME = "database_query_time"
    DISK_IO = "disk_io"


class MetricCategory(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"
    APPLICATION = "application"
    DATABASE = "database"
    NETWORK = "network"
    IO = "io"


class AnomalyType(str, Enum):
    CORRELATION_BREAK = "correlation_break"
    CORRELATION_REVERSAL = "correlation_reversal"
    UNEXPECTED_CORRELATION = "unexpected_correlation"
    MISSING_CORRELATION = "missing_correlation"


@dataclass(frozen=True)
class PerformanceMetric:
    metric_type: MetricType
    category: MetricCategory
    value: float
    timestamp: datetime
    service_name: str
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class PerformanceProfile:
    id: str
    target_id: str
    metrics: List[PerformanceMetric]


@dataclass(frozen=True)
class MetricIdentifier:
    service_id: str
    metric_type: MetricType
    category: MetricCategory
    component: Optional[str] = None

    def matches(self, metric: PerformanceMetric) -> bool:
        return (
            (self.service_id == "*" or metric.service_name == self.service_id)
            and metric.metric_type == self.metric_type
            and metric.category == self.category
        )


@dataclass(frozen=True)
class BusinessImpact:
    impact_score: float
    affected_kpis: Tuple[str, ...]
    cost_implications: float
    user_experience_impact: float
    operational_impact: float


@dataclass(frozen=True)
class CorrelationAnalysis:
    id: str
    metric1: MetricIdentifier
    metric2: MetricIdentifier
    correlation_coefficient: float
    correlation_strength: str
    correlation_type: str
    p_value: float
    sample_size: int
    time_lag: int
    confidence_interval: Tuple[float, float]
    analysis_timestamp: datetime
    business_impact: BusinessImpact
    causality_direction: Optional[str] = None
    pattern_id: Optional[str] = None


@dataclass(frozen=True)
class CorrelationPattern:
    id: str
    name: str
    description: str
    metric1: MetricIdentifier
    metric2: MetricIdentifier
    typical_correlation_range: Tuple[float, float]
    expected_causality: str
    business_significance: int


@dataclass(frozen=True)
class CorrelationAnomaly:
    id: str
    correlation_id: str
    baseline_key: str
    expected_correlation: float
    actual_correlation: float
    deviation_score: float
    anomaly_type: AnomalyType
    potential_causes: Tuple[str, ...]
    detected_at: datetime


@dataclass(frozen=True)
class TimeSeriesCorrelation:
    profile_id: str
    target_id: str
    timestamp: datetime
    correlations: Tuple[CorrelationAnalysis, ...]
    anomalies: Tuple[CorrelationAnomaly, ...]
    failed_steps: Tuple[str, ...] = ()


class AnomalyBaseline:
    """Rolling window of observed coefficients for one metric pair."""

    def __init__(self, window: int = 100):
        self.samples: Deque[float] = deque(maxlen=window)
        self.mean = 0.0
        self.variance = 0.0
        self.std_dev = 0.0
        self.last_updated: Optional[datetime] = None

    def add(self, value: float, now: Optional[datetime] = None) -> None:
        self.samples.append(value)
        window = np.asarray(self.samples, dtype=float)
        self.mean = float(window.mean())
        self.variance = float(((window - self.mean) ** 2).mean())
        self.std_dev = float(np.sqrt(self.variance))
        self.last_updated = now or datetime.now()


class BoundedTTLCache:
    """LRU mapping whose entries also expire after ``ttl``."""

    def __init__(self, maxsize: int, ttl: timedelta, clock: Callable[[], datetime] = datetime.now):
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[datetime, object]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, default=None):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._data[key]
                return default
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def values(self) -> List:
        with self._lock:
            now = self._clock()
            return [v for stored_at, v in self._data.values() if now - stored_at <= self.ttl]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def default_patterns() -> List[CorrelationPattern]:
    def metric(metric_type, category):
        return MetricIdentifier("*", metric_type, category)

    return [
        CorrelationPattern(
            id="cpu_memory_correlation",
            name="CPU-Memory Usage Correlation",
            description="Strong correlation between CPU usage and memory allocation",
            metric1=metric(MetricType.CPU_USAGE, MetricCategory.CPU),
            metric2=metric(MetricType.MEMORY_USAGE, MetricCategory.MEMORY),
            typical_correlation_range=(0.6, 0.9),
            expected_causality=stats.BIDIRECTIONAL,
            business_significance=8,
        ),
        CorrelationPattern(
            id="response_time_throughput",
            name="Response Time-Throughput Inverse Correlation",
            description="Inverse correlation between response time and throughput",
            metric1=metric(MetricType.RESPONSE_TIME, MetricCategory.APPLICATION),
            metric2=metric(MetricType.THROUGHPUT, MetricCategory.APPLICATION),
            typical_correlation_range=(-0.8, -0.4),
            expected_causality=stats.BIDIRECTIONAL,
            business_significance=9,
        ),
        CorrelationPattern(
            id="db_query_cpu_correlation",
            name="Database Query Time-CPU Correlation",
            description="Correlation between database query time and CPU usage",
            metric1=metric(MetricType.DATABASE_QUERY_TIME, MetricCategory.DATABASE),
            metric2=metric(MetricType.CPU_USAGE, MetricCategory.CPU),
            typical_correlation_range=(0.3, 0.7),
            expected_causality=stats.METRIC1_TO_METRIC2,
            business_significance=7,
        ),
        CorrelationPattern(
            id="error_rate_response_time",
            name="Error Rate-Response Time Correlation",
            description="Correlation between error rate and response time degradation",
            metric1=metric(MetricType.ERROR_RATE, MetricCategory.APPLICATION),
            metric2=metric(MetricType.RESPONSE_TIME, MetricCategory.APPLICATION),
            typical_correlation_range=(0.4, 0.8),
            expected_causality=stats.COMMON_CAUSE,
            business_significance=9,
        ),
        CorrelationPattern(
            id="network_io_response_time",
            name="Network I/O-Response Time Correlation",
            description="Correlation between network I/O latency and overall response time",
            metric1=metric(MetricType.NETWORK_IO, MetricCategory.NETWORK),
            metric2=metric(MetricType.RESPONSE_TIME, MetricCategory.APPLICATION),
            typical_correlation_range=(0.5, 0.9),
            expected_causality=stats.METRIC1_TO_METRIC2,
            business_significance=8,
        ),
    ]


KPIS = {
    MetricType.RESPONSE_TIME: ("Average Response Time", "User Satisfaction"),
    MetricType.THROUGHPUT: ("Requests Per Second", "System Capacity"),
    MetricType.ERROR_RATE: ("Error Rate", "System Reliability"),
    MetricType.CPU_USAGE: ("Resource Utilization", "Infrastructure Cost"),
    MetricType.MEMORY_USAGE: ("Memory Efficiency", "Resource Cost"),
}
PATTERN_UX_WEIGHTS = {MetricType.RESPONSE_TIME: 30, MetricType.ERROR_RATE: 40, MetricType.THROUGHPUT: 20}
PATTERN_OPS_WEIGHTS = {
    MetricCategory.CPU: 25, MetricCategory.MEMORY: 25, MetricCategory.DATABASE: 30, MetricCategory.NETWORK: 20,
}
METRIC_UX_WEIGHTS = {
    MetricType.RESPONSE_TIME: 30, MetricType.ERROR_RATE: 40, MetricType.THROUGHPUT: 20,
    MetricType.CPU_USAGE: 10, MetricType.MEMORY_USAGE: 10,
}
METRIC_OPS_WEIGHTS = {
    MetricCategory.CPU: 25, MetricCategory.MEMORY: 25, MetricCategory.DATABASE: 30,
    MetricCategory.NETWORK: 20, MetricCategory.IO: 20, MetricCategory.APPLICATION: 15,
}


def pattern_business_impact(pattern: CorrelationPattern, r: float) -> BusinessImpact:
    base = pattern.business_significance * 10
    magnitude = abs(r)
    involved = (pattern.metric1, pattern.metric2)

    kpis: List[str] = []
    for metric in involved:
        for kpi in KPIS.get(metric.metric_type, ()):
            if kpi not in kpis:
                kpis.append(kpi)

    ux = sum(PATTERN_UX_WEIGHTS.get(m.metric_type, 10) for m in involved)
    ops = sum(PATTERN_OPS_WEIGHTS.get(m.category, 15) for m in involved)
    return BusinessImpact(
        impact_score=base * magnitude,
        affected_kpis=tuple(kpis),
        cost_implications=base * magnitude * 1000,
        user_experience_impact=min(ux * magnitude, 100.0),
        operational_impact=min(ops * magnitude, 100.0),
    )


def default_business_impact(r: float, metric1: PerformanceMetric, metric2: PerformanceMetric) -> BusinessImpact:
    magnitude = abs(r)
    base = magnitude * 50
    ux = METRIC_UX_WEIGHTS.get(metric1.metric_type, 5) + METRIC_UX_WEIGHTS.get(metric2.metric_type, 5)
    ops = METRIC_OPS_WEIGHTS.get(metric1.category, 10) + METRIC_OPS_WEIGHTS.get(metric2.category, 10)
    return BusinessImpact(
        impact_score=base,
        affected_kpis=(metric1.metric_type.value, metric2.metric_type.value),
        cost_implications=base * 100,
        user_experience_impact=min(ux * magnitude, 100.0),
        operational_impact=min(ops * magnitude, 100.0),
    )


def anomaly_type(expected: float, actual: float) -> AnomalyType:
    diff = actual - expected
    if abs(diff) > 0.5:
        return AnomalyType.CORRELATION_BREAK
    if np.sign(expected) != np.sign(actual) and abs(expected) > 0.3:
        return AnomalyType.CORRELATION_REVERSAL
    if abs(expected) < 0.3 and abs(actual) > 0.6:
        return AnomalyType.UNEXPECTED_CORRELATION
    if abs(expected) > 0.6 and abs(actual) < 0.3:
        return AnomalyType.MISSING_CORRELATION
    return AnomalyType.CORRELATION_BREAK


def baseline_key(analysis: CorrelationAnalysis) -> str:
    key = f"{analysis.metric1.service_id}_{analysis.metric1.metric_type.value}_{analysis.metric2.metric_type.value}"
    if analysis.time_lag:
        key += f"_lag{analysis.time_lag}"
    return key


def _identifier(metric: PerformanceMetric) -> MetricIdentifier:
    return MetricIdentifier(
        service_id=metric.service_name,
        metric_type=metric.metric_type,
        category=metric.category,
        component=metric.tags.get("component"),
    )


def _group_by_type(metrics: List[PerformanceMetric]) -> Dict[MetricType, List[PerformanceMetric]]:
    groups: Dict[MetricType, List[PerformanceMetric]] = {}
    for metric in sorted(metrics, key=lambda m: m.timestamp):
        groups.setdefault(metric.metric_type, []).append(metric)
    return groups


class CorrelationService:
    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        correlation_threshold: float = settings.CORRELATION_THRESHOLD,
        minimum_sample_size: int = settings.CORRELATION_MIN_SAMPLE_SIZE,
        enable_time_series_analysis: bool = True,
        enable_causality_analysis: bool = True,
        cache_ttl_seconds: int = settings.CORRELATION_CACHE_TTL_SECONDS,
        cache_max_profiles: int = settings.CORRELATION_CACHE_MAX_PROFILES,
        baseline_window: int = settings.CORRELATION_BASELINE_WINDOW,
        history_window: int = settings.CORRELATION_HISTORY_WINDOW,
        max_workers: int = settings.CORRELATION_MAX_WORKERS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.publisher = publisher or LoggingEventPublisher()
        self.correlation_threshold = correlation_threshold
        self.minimum_sample_size = minimum_sample_size
        self.enable_time_series_analysis = enable_time_series_analysis
        self.enable_causality_analysis = enable_causality_analysis
        self.retention = timedelta(seconds=cache_ttl_seconds)
        self.baseline_window = baseline_window
        self.history_window = history_window
        self.max_workers = max_workers
        self._clock = clock

        self.patterns: Dict[str, CorrelationPattern] = {p.id: p for p in default_patterns()}
        self._cache = BoundedTTLCache(cache_max_profiles, self.retention, clock)
        self._history: Dict[str, Deque[TimeSeriesCorrelation]] = {}
        self._history_lock = threading.Lock()
        self._baselines: Dict[str, AnomalyBaseline] = {}
        self._baseline_locks: Dict[str, threading.Lock] = {}
        self._baseline_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Profile analysis
    # ------------------------------------------------------------------

    def analyze_profile(self, profile: PerformanceProfile) -> TimeSeriesCorrelation:
        started = self._clock()
        groups = _group_by_type(profile.metrics)

        steps = [("pairwise", self.analyze_pairwise), ("patterns", self.analyze_patterns)]
        if self.enable_time_series_analysis:
            steps.append(("lagged", self.analyze_lagged))

        correlations: List[CorrelationAnalysis] = []
        failed: List[str] = []
        for name, step in steps:
            try:
                correlations.extend(step(profile, groups))
            except Exception as e:
                logger.error(f"Correlation step {name} failed for profile {profile.id}: {e}")
                failed.append(name)

        anomalies: List[CorrelationAnomaly] = []
        try:
            anomalies = self.detect_anomalies(correlations)
        except Exception as e:
            logger.error(f"Anomaly detection failed for profile {profile.id}: {e}")
            failed.append("anomalies")

        if self.enable_causality_analysis:
            try:
                correlations = self.apply_causality(correlations, groups)
            except Exception as e:
                logger.error(f"Causality analysis failed for profile {profile.id}: {e}")
                failed.append("causality")

        result = TimeSeriesCorrelation(
            profile_id=profile.id,
            target_id=profile.target_id,
            timestamp=self._clock(),
            correlations=tuple(correlations),
            anomalies=tuple(anomalies),
            failed_steps=tuple(failed),
        )
        self._cache.set(profile.id, result.correlations)
        self._store_history(result)
        self._prune_baselines()

        for anomaly in anomalies:
            safe_publish(self.publisher, CORRELATION_ANOMALY_DETECTED, {
                "anomalyId": anomaly.id,
                "profileId": profile.id,
                "correlationId": anomaly.correlation_id,
                "anomalyType": anomaly.anomaly_type.value,
                "expectedCorrelation": anomaly.expected_correlation,
                "actualCorrelation": anomaly.actual_correlation,
                "deviationScore": anomaly.deviation_score,
            })
        safe_publish(self.publisher, CORRELATION_ANALYSIS_COMPLETED, {
            "profileId": profile.id,
            "correlationsFound": len(correlations),
            "anomaliesDetected": len(anomalies),
            "failedSteps": list(failed),
            "durationMs": (self._clock() - started).total_seconds() * 1000,
        })
        logger.info(
            f"Analyzed profile {profile.id}: {len(correlations)} correlations, {len(anomalies)} anomalies"
        )
        return result

    def analyze_profiles(self, profiles: List[PerformanceProfile]) -> List[TimeSeriesCorrelation]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(self.analyze_profile, profiles))

    def correlate(
        self,
        metrics1: List[PerformanceMetric],
        metrics2: List[PerformanceMetric],
        lag: int = 0,
    ) -> CorrelationAnalysis:
        values1 = [m.value for m in metrics1]
        values2 = [m.value for m in metrics2][lag:]
        n = min(len(values1), len(values2))
        x, y = values1[:n], values2[:n]

        r = stats.pearson_correlation(x, y)
        return CorrelationAnalysis(
            id=new_id(),
            metric1=_identifier(metrics1[0]),
            metric2=_identifier(metrics2[0]),
            correlation_coefficient=r,
            correlation_strength=stats.correlation_strength(r),
            correlation_type=stats.correlation_type(x, y, r),
            p_value=stats.p_value(r, n),
            sample_size=n,
            time_lag=lag,
            confidence_interval=stats.confidence_interval(r, n),
            analysis_timestamp=self._clock(),
            business_impact=default_business_impact(r, metrics1[0], metrics2[0]),
        )

    def _pairs(self, groups):
        types = list(groups)
        for i in range(len(types)):
            for j in range(i + 1, len(types)):
                metrics1, metrics2 = groups[types[i]], groups[types[j]]
                if len(metrics1) >= self.minimum_sample_size and len(metrics2) >= self.minimum_sample_size:
                    yield metrics1, metrics2

    def analyze_pairwise(self, profile: PerformanceProfile, groups) -> List[CorrelationAnalysis]:
        found = []
        for metrics1, metrics2 in self._pairs(groups):
            analysis = self.correlate(metrics1, metrics2)
            if abs(analysis.correlation_coefficient) >= self.correlation_threshold:
                found.append(analysis)
        return found

    def analyze_patterns(self, profile: PerformanceProfile, groups) -> List[CorrelationAnalysis]:
        ordered = sorted(profile.metrics, key=lambda m: m.timestamp)
        found = []
        for pattern in self.patterns.values():
            metrics1 = [m for m in ordered if pattern.metric1.matches(m)]
            metrics2 = [m for m in ordered if pattern.metric2.matches(m)]
            if len(metrics1) < self.minimum_sample_size or len(metrics2) < self.minimum_sample_size:
                continue

            analysis = self.correlate(metrics1, metrics2)
            low, high = pattern.typical_correlation_range
            if low <= analysis.correlation_coefficient <= high:
                found.append(replace(
                    analysis,
                    business_impact=pattern_business_impact(pattern, analysis.correlation_coefficient),
                    causality_direction=pattern.expected_causality,
                    pattern_id=pattern.id,
                ))
        return found

    def analyze_lagged(self, profile: PerformanceProfile, groups) -> List[CorrelationAnalysis]:
        found = []
        for metrics1, metrics2 in self._pairs(groups):
            max_lag = min(10, len(metrics1) // 3)
            for lag in range(1, max_lag + 1):
                analysis = self.correlate(metrics1, metrics2, lag)
                if abs(analysis.correlation_coefficient) >= self.correlation_threshold:
                    found.append(replace(analysis, correlation_type=stats.LAGGED))
        return found

    def apply_causality(self, correlations: List[CorrelationAnalysis], groups) -> List[CorrelationAnalysis]:
        updated = []
        for analysis in correlations:
            if abs(analysis.correlation_coefficient) > 0.6:
                values1 = [m.value for m in groups.get(analysis.metric1.metric_type, [])]
                values2 = [m.value for m in groups.get(analysis.metric2.metric_type, [])]
                analysis = replace(analysis, causality_direction=stats.causality_direction(values1, values2))
            updated.append(analysis)
        return updated

    # ------------------------------------------------------------------
    # Baselines and anomalies
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        with self._baseline_guard:
            return self._baseline_locks.setdefault(key, threading.Lock())

    @contextmanager
    def _locked(self, key: str):
        # A lock popped by pruning while we waited on it is stale; take the current one.
        while True:
            lock = self._lock_for(key)
            lock.acquire()
            with self._baseline_guard:
                if self._baseline_locks.get(key) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def seed_baseline(self, key: str, samples: List[float]) -> AnomalyBaseline:
        """Load historical coefficients for a metric pair."""
        with self._locked(key):
            baseline = self._baselines.setdefault(key, AnomalyBaseline(self.baseline_window))
            for value in samples:
                baseline.add(value, self._clock())
            return baseline

    def get_baseline(self, key: str) -> Optional[AnomalyBaseline]:
        return self._baselines.get(key)

    def detect_anomalies(self, correlations: List[CorrelationAnalysis]) -> List[CorrelationAnomaly]:
        anomalies = []
        for analysis in correlations:
            key = baseline_key(analysis)
            with self._locked(key):
                baseline = self._baselines.get(key)
                if baseline is not None and len(baseline.samples) >= MIN_BASELINE_SAMPLES:
                    anomaly = self._check(analysis, key, baseline)
                    if anomaly is not None:
                        anomalies.append(anomaly)
                if baseline is None:
                    baseline = self._baselines[key] = AnomalyBaseline(self.baseline_window)
                baseline.add(analysis.correlation_coefficient, self._clock())
        return anomalies

    def _check(self, analysis: CorrelationAnalysis, key: str, baseline: AnomalyBaseline) -> Optional[CorrelationAnomaly]:
        expected = baseline.mean
        actual = analysis.correlation_coefficient
        deviation = abs(actual - expected)
        if deviation <= 2 * baseline.std_dev:
            return None

        return CorrelationAnomaly(
            id=new_id(),
            correlation_id=analysis.id,
            baseline_key=key,
            expected_correlation=expected,
            actual_correlation=actual,
            deviation_score=deviation / baseline.std_dev if baseline.std_dev else float("inf"),
            anomaly_type=anomaly_type(expected, actual),
            potential_causes=self._potential_causes(analysis, baseline),
            detected_at=self._clock(),
        )

    def _potential_causes(self, analysis: CorrelationAnalysis, baseline: AnomalyBaseline) -> Tuple[str, ...]:
        causes = []
        if abs(analysis.correlation_coefficient) < abs(baseline.mean) * 0.5:
            causes += ["System behavior change", "New deployment or configuration change", "External dependency issues"]
        if analysis.p_value > 0.05:
            causes += ["Insufficient sample size", "High data variance"]
        if analysis.sample_size < self.minimum_sample_size * 2:
            causes.append("Limited data availability")
        return tuple(causes)

    def _prune_baselines(self) -> None:
        cutoff = self._clock() - BASELINE_RETENTION

        def is_stale(baseline):
            return baseline is not None and baseline.last_updated is not None and baseline.last_updated < cutoff

        with self._baseline_guard:
            candidates = [k for k, b in self._baselines.items() if is_stale(b)]

        dropped = 0
        for key in candidates:
            with self._locked(key):
                if not is_stale(self._baselines.get(key)):
                    continue
                del self._baselines[key]
                with self._baseline_guard:
                    self._baseline_locks.pop(key, None)
                dropped += 1
        if dropped:
            logger.debug(f"Dropped {dropped} stale correlation baselines")

    # ------------------------------------------------------------------
    # History and queries
    # ------------------------------------------------------------------

    def _store_history(self, result: TimeSeriesCorrelation) -> None:
        with self._history_lock:
            history = self._history.setdefault(result.target_id, deque(maxlen=self.history_window))
            history.append(result)

    def get_correlations(self, profile_id: str) -> Tuple[CorrelationAnalysis, ...]:
        return self._cache.get(profile_id, ())

    def get_correlation_patterns(self) -> List[CorrelationPattern]:
        return list(self.patterns.values())

    def get_historical_correlations(self, target_id: str) -> List[TimeSeriesCorrelation]:
        cutoff = self._clock() - self.retention
        with self._history_lock:
            history = self._history.get(target_id)
            if not history:
                return []
            while history and history[0].timestamp < cutoff:
                history.popleft()
            return list(history)

    def get_correlation_statistics(self) -> Dict[str, int]:
        with self._history_lock:
            historical_entries = sum(len(h) for h in self._history.values())
        return {
            "total_patterns": len(self.patterns),
            "cached_correlations": sum(len(c) for c in self._cache.values()),
            "historical_entries": historical_entries,
            "baseline_entries": len(self._baselines),
        }

    def shutdown(self) -> None:
        self._cache.clear()
        with self._history_lock:
            self._history.clear()
        with self._baseline_guard:
            self._baselines.clear()
        logger.info("Correlation service shut down")
