"""Quality gates for specialist, department, and orchestrator outputs.

Each gate starts from a base score, applies fixed penalties, clamps to
[0, 1], and passes when the score reaches its threshold.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from preprod.schemas import DepartmentReport, OrchestratorResult

SPECIALIST_THRESHOLD = 0.50
DEPARTMENT_THRESHOLD = 0.60
ORCHESTRATOR_THRESHOLD = 0.75
CRITICAL_SCORE = 0.5


@dataclass
class QualityGate:
    name: str
    threshold: float
    passed: bool
    score: float
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QualityGateReport:
    passed: bool
    gates: list[QualityGate]
    overall_score: float


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def _gate(name: str, threshold: float, score: float, issues: list[str]) -> QualityGate:
    # Rounded before the comparison: 0.7 - 0.1 - 0.1 scores 0.5, not 0.49999...
    score = round(_clamp(score), 4)
    return QualityGate(name=name, threshold=threshold, passed=score >= threshold, score=score, issues=issues)


def _populated_fields(output: dict[str, Any]) -> int:
    return sum(1 for v in output.values() if v not in (None, "", [], {}))


def validate_specialist_quality(output: dict[str, Any] | None, threshold: float = SPECIALIST_THRESHOLD) -> QualityGate:
    output = output or {}
    issues: list[str] = []
    score = 0.7

    confidence = output.get("confidence") or 0
    if confidence < 0.6:
        issues.append("Low confidence score")
        score -= 0.1

    completeness = output.get("completeness") or 0
    if completeness < 0.7:
        issues.append("Output appears incomplete")
        score -= 0.1

    if _populated_fields(output) < 2:
        issues.append("Insufficient content")
        score -= 0.2

    return _gate("Specialist Output Quality", threshold, score, issues)


def validate_department_quality(report: DepartmentReport, threshold: float = DEPARTMENT_THRESHOLD) -> QualityGate:
    issues: list[str] = []
    score = report.department_quality

    if report.relevance < 0.5:
        issues.append("Low relevance to request")
        score -= 0.1

    accepted = sum(1 for o in report.outputs if o.decision == "accept")
    if accepted == 0 and report.status == "complete":
        issues.append("No accepted outputs from specialists")
        score -= 0.3

    issues.extend(report.issues)
    return _gate(f"{report.department} Department Quality", threshold, score, issues)


def validate_orchestrator_quality(result: OrchestratorResult, threshold: float = ORCHESTRATOR_THRESHOLD) -> QualityGate:
    issues: list[str] = []
    score = result.overall_quality

    if result.completeness < 0.8:
        issues.append("Incomplete department coverage")
        score -= 0.1

    if result.consistency < 0.7:
        issues.append("Low cross-department consistency")
        score -= 0.1

    if not result.brain_validated:
        issues.append("Knowledge validation failed")
        score -= 0.2
    elif result.brain_quality_score < 0.7:
        issues.append("Low knowledge validation score")
        score -= 0.1

    return _gate("Overall Orchestration Quality", threshold, score, issues)


def run_all_quality_gates(result: OrchestratorResult) -> QualityGateReport:
    """One gate per reported department plus the orchestrator gate; all must pass."""
    gates = [validate_department_quality(r) for r in result.department_reports]
    gates.append(validate_orchestrator_quality(result))
    return QualityGateReport(
        passed=all(g.passed for g in gates),
        gates=gates,
        overall_score=result.overall_quality,
    )


def get_quality_recommendation(gates: list[QualityGate]) -> tuple[str, str]:
    """Map gate failures to ``(action, reason)`` with action ingest / modify / discard."""
    failed = [g for g in gates if not g.passed]
    if not failed:
        return "ingest", "All quality gates passed"

    critical = [g for g in failed if g.score < CRITICAL_SCORE]
    if critical:
        return "discard", f"Critical quality issues: {', '.join(g.name for g in critical)}"

    return "modify", "Quality issues need addressing: " + ", ".join("; ".join(g.issues) for g in failed)
