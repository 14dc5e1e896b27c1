"""Rule-based grade-anomaly classifier.

A batch of ``(studentId, grade)`` pairs for one subject and exam is run
through five deterministic checks:

1. uniform scores across a cohort larger than ``uniform_min_cohort``;
2. individual outliers, each grade measured against the mean and standard
   deviation of the *other* grades in the batch;
3. deviation of the cohort mean from a supplied historical average;
4. a high share of missing (``None``) grades;
5. clustering at the maximum score, at zero, or just above the pass mark.

Cohort-wide findings are reported under the ``"GENERAL"`` student id. The
output always carries a list (possibly empty) and ``has_anomalies`` is true
exactly when that list is non-empty.

Anomaly detection is advisory: :func:`safe_classify` turns any classifier
failure into an empty report so the marks are still saved.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from app_logging import get_logger

GENERAL = "GENERAL"

_logger = get_logger("gradecentral.anomalies")


@dataclass(frozen=True)
class GradeEntry:
    student_id: str
    grade: Optional[float]


@dataclass(frozen=True)
class Anomaly:
    student_id: str
    explanation: str

    def to_dict(self) -> Dict[str, str]:
        return {"studentId": self.student_id, "explanation": self.explanation}


@dataclass
class AnomalyReport:
    anomalies: List[Anomaly] = field(default_factory=list)

    @property
    def has_anomalies(self) -> bool:
        return bool(self.anomalies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAnomalies": self.has_anomalies,
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnomalyReport":
        """Rebuild a report, rejecting payloads that do not match the schema."""

        raw = data.get("anomalies")
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise ValueError("anomalies must be a list")
        anomalies = []
        for item in raw:
            if not isinstance(item, Mapping):
                raise ValueError("each anomaly must be an object")
            anomalies.append(Anomaly(str(item["studentId"]), str(item["explanation"])))
        return cls(anomalies)


@dataclass(frozen=True)
class AnomalyThresholds:
    uniform_min_cohort: int = 5
    outlier_stddevs: float = 2.5
    outlier_min_gap: float = 10.0
    outlier_min_cohort: int = 4
    historical_deviation: float = 17.5
    missing_ratio: float = 0.2
    pass_mark: float = 50.0
    cluster_band: float = 5.0
    cluster_share: float = 0.3
    cluster_min_count: int = 3
    extreme_share: float = 0.4

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "AnomalyThresholds":
        defaults = cls()
        return cls(
            uniform_min_cohort=int(config.get("ANOMALY_UNIFORM_MIN_COHORT", defaults.uniform_min_cohort)),
            outlier_stddevs=float(config.get("ANOMALY_OUTLIER_STDDEVS", defaults.outlier_stddevs)),
            outlier_min_gap=float(config.get("ANOMALY_OUTLIER_MIN_GAP", defaults.outlier_min_gap)),
            historical_deviation=float(config.get("ANOMALY_HISTORICAL_DEVIATION",
                                                  defaults.historical_deviation)),
            missing_ratio=float(config.get("ANOMALY_MISSING_RATIO", defaults.missing_ratio)),
            pass_mark=float(config.get("ANOMALY_PASS_MARK", defaults.pass_mark)),
            cluster_band=float(config.get("ANOMALY_CLUSTER_BAND", defaults.cluster_band)),
            cluster_share=float(config.get("ANOMALY_CLUSTER_SHARE", defaults.cluster_share)),
            extreme_share=float(config.get("ANOMALY_EXTREME_SHARE", defaults.extreme_share)),
        )


class AnomalyClassifier(Protocol):
    def classify(self, subject: str, exam: str, grades: Sequence[GradeEntry],
                 historical_average: Optional[float] = None,
                 max_marks: float = 100.0) -> AnomalyReport:
        ...


def _fmt(value: float) -> str:
    return f"{value:.1f}".rstrip("0").rstrip(".")


class RuleBasedClassifier:
    """Deterministic implementation of the five anomaly rules.

    Grades are raw scores out of ``max_marks``; the historical, pass-mark and
    extreme-score rules work on percentages.
    """

    def __init__(self, thresholds: Optional[AnomalyThresholds] = None) -> None:
        self.thresholds = thresholds or AnomalyThresholds()

    def classify(self, subject: str, exam: str, grades: Sequence[GradeEntry],
                 historical_average: Optional[float] = None,
                 max_marks: float = 100.0) -> AnomalyReport:
        scored = [(entry.student_id, float(entry.grade)) for entry in grades
                  if entry.grade is not None]
        max_marks = float(max_marks) if max_marks else 100.0

        report = AnomalyReport()
        uniform = self._check_uniform(scored, report)
        self._check_outliers(scored, max_marks, report)
        self._check_historical(scored, max_marks, historical_average, report)
        self._check_missing(grades, report)
        self._check_distribution(scored, max_marks, uniform, report)

        if report.has_anomalies:
            _logger.info("grade anomalies detected",
                         extra={"subject": subject, "exam": exam,
                                "anomaly_count": len(report.anomalies)})
        return report

    def _check_uniform(self, scored, report: AnomalyReport) -> bool:
        values = {grade for _, grade in scored}
        if len(scored) > self.thresholds.uniform_min_cohort and len(values) == 1:
            report.anomalies.append(Anomaly(
                GENERAL,
                f"All {len(scored)} students received the same grade ({_fmt(values.pop())}). "
                "Please confirm the marks were entered correctly.",
            ))
            return True
        return False

    def _check_outliers(self, scored, max_marks: float, report: AnomalyReport) -> None:
        t = self.thresholds
        if len(scored) < t.outlier_min_cohort:
            return
        min_gap = t.outlier_min_gap * max_marks / 100
        grades = [grade for _, grade in scored]
        for index, (student_id, grade) in enumerate(scored):
            others = grades[:index] + grades[index + 1:]
            mean = statistics.fmean(others)
            spread = statistics.pstdev(others)
            gap = abs(grade - mean)
            if gap < min_gap:
                continue
            if spread == 0 or gap > t.outlier_stddevs * spread:
                direction = "above" if grade > mean else "below"
                report.anomalies.append(Anomaly(
                    student_id,
                    f"Grade {_fmt(grade)} is far {direction} the rest of the class "
                    f"(mean {_fmt(mean)}, standard deviation {_fmt(spread)}).",
                ))

    def _check_historical(self, scored, max_marks: float, historical_average: Optional[float],
                          report: AnomalyReport) -> None:
        if historical_average is None or not scored:
            return
        mean_pct = statistics.fmean(grade for _, grade in scored) / max_marks * 100
        difference = mean_pct - float(historical_average)
        if abs(difference) > self.thresholds.historical_deviation:
            direction = "higher" if difference > 0 else "lower"
            report.anomalies.append(Anomaly(
                GENERAL,
                f"Class average of {_fmt(mean_pct)}% is {_fmt(abs(difference))} points {direction} "
                f"than the historical average of {_fmt(float(historical_average))}%.",
            ))

    def _check_missing(self, grades: Sequence[GradeEntry], report: AnomalyReport) -> None:
        if not grades:
            return
        missing = sum(1 for entry in grades if entry.grade is None)
        ratio = missing / len(grades)
        if missing and ratio >= self.thresholds.missing_ratio:
            report.anomalies.append(Anomaly(
                GENERAL,
                f"{missing} of {len(grades)} students ({_fmt(ratio * 100)}%) have no grade recorded.",
            ))

    def _check_distribution(self, scored, max_marks: float, uniform: bool,
                            report: AnomalyReport) -> None:
        t = self.thresholds
        cohort = len(scored)
        if cohort <= t.uniform_min_cohort:
            return
        percentages = [grade / max_marks * 100 for _, grade in scored]

        if not uniform:
            at_max = sum(1 for pct in percentages if pct >= 100)
            at_zero = sum(1 for pct in percentages if pct <= 0)
            if at_max / cohort >= t.extreme_share:
                report.anomalies.append(Anomaly(
                    GENERAL, f"{at_max} of {cohort} students scored the maximum mark."))
            if at_zero / cohort >= t.extreme_share:
                report.anomalies.append(Anomaly(
                    GENERAL, f"{at_zero} of {cohort} students scored zero."))

        # Marks bunched just above the pass mark with nothing just below it.
        above = sum(1 for pct in percentages if t.pass_mark <= pct < t.pass_mark + t.cluster_band)
        below = sum(1 for pct in percentages if t.pass_mark - t.cluster_band <= pct < t.pass_mark)
        if above >= t.cluster_min_count and above / cohort >= t.cluster_share and below == 0:
            report.anomalies.append(Anomaly(
                GENERAL,
                f"{above} of {cohort} students scored just above the pass mark "
                f"({_fmt(t.pass_mark)}%) and none just below it.",
            ))


def safe_classify(classifier: AnomalyClassifier, subject: str, exam: str,
                  grades: Sequence[GradeEntry], historical_average: Optional[float] = None,
                  max_marks: float = 100.0) -> AnomalyReport:
    """Run ``classifier``; any failure or malformed result yields an empty report."""

    try:
        result = classifier.classify(subject, exam, grades,
                                     historical_average=historical_average, max_marks=max_marks)
        if isinstance(result, AnomalyReport):
            return AnomalyReport(list(result.anomalies))
        if isinstance(result, Mapping):
            return AnomalyReport.from_dict(result)
        raise ValueError(f"unexpected classifier result {type(result).__name__}")
    except Exception:
        _logger.warning("anomaly classification failed; defaulting to no anomalies",
                        exc_info=True, extra={"subject": subject, "exam": exam})
        return AnomalyReport()


__all__ = [
    "Anomaly",
    "AnomalyClassifier",
    "AnomalyReport",
    "AnomalyThresholds",
    "GENERAL",
    "GradeEntry",
    "RuleBasedClassifier",
    "safe_classify",
]
