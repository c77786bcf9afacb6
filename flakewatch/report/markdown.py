"""Markdown rendering of resolution effectiveness for an organization.

Pure formatting: takes the reporter's models and returns a markdown string.
Used by the CLI ``report`` command.
"""

from flakewatch.engine.models import (
    EffectivenessSummary,
    ProactiveRecommendations,
    RecurrenceTrend,
)


def _format_plain_table(
    headers: list[str],
    rows: list[list[str]],
    right_align: set[int] | None = None,
) -> str:
    """Format a plain-text table with aligned columns (no pipe characters).

    Args:
        headers: Column header strings.
        rows: List of rows, each a list of cell strings.
        right_align: Set of column indices (0-based) to right-align.

    Returns:
        Multi-line string with padded columns separated by two spaces.
    """
    right_align = right_align or set()
    if not rows:
        return ""
    all_data = [headers, *rows]
    col_widths = [max(len(row[i]) for row in all_data) for i in range(len(headers))]

    def fmt_row(cells: list[str]) -> str:
        parts: list[str] = []
        for i, cell in enumerate(cells):
            width = col_widths[i]
            parts.append(cell.rjust(width) if i in right_align else cell.ljust(width))
        return "  ".join(parts)

    lines = [fmt_row(headers)]
    lines.append("  ".join("-" * w for w in col_widths))
    for row in rows:
        lines.append(fmt_row(row))
    return "\n".join(lines)


def _percent(value: float) -> str:
    return f"{value * 100:.1f}%"


def _recommendation_section(title: str, items: list[str]) -> list[str]:
    lines = [f"### {title}", ""]
    if items:
        lines.extend(f"- {item}" for item in items)
    else:
        lines.append("*None.*")
    lines.append("")
    return lines


def format_effectiveness_markdown(
    summary: EffectivenessSummary,
    recommendations: ProactiveRecommendations,
    trend: RecurrenceTrend,
) -> str:
    """Convert an effectiveness summary into a readable markdown report."""
    lines: list[str] = []
    lines.append(f"# Resolution Effectiveness: {summary.organization_id}")
    lines.append("")
    lines.append(f"**Period:** {summary.period_start:%Y-%m-%d} to {summary.period_end:%Y-%m-%d}")
    lines.append("")

    # 1. Summary
    lines.append("## Summary")
    lines.append("")
    if summary.total_resolutions == 0:
        lines.append("*No resolutions recorded in this period.*")
    else:
        summary_rows = [
            ["Total resolutions", str(summary.total_resolutions)],
            ["Pending verification", str(summary.pending_resolutions)],
            ["Verified", str(summary.successful_resolutions)],
            ["Regressions", str(summary.regressions)],
            ["Regression rate", _percent(summary.regression_rate)],
            ["Avg effort (hours)", f"{summary.avg_time_to_resolution_hours:.1f}"],
            ["Avg time to verification (hours)", f"{summary.avg_time_to_verification_hours:.1f}"],
            ["Cost savings realized", f"${summary.cost_savings_realized:,.2f}"],
            ["Pattern recurrence rate", _percent(summary.pattern_recurrence_rate)],
        ]
        lines.append(_format_plain_table(["Metric", "Value"], summary_rows, right_align={1}))
    lines.append("")

    # 2. Strategies
    lines.append("## Strategy Effectiveness")
    lines.append("")
    if not summary.most_effective_strategies:
        lines.append("*No verified resolutions yet.*")
    else:
        strategy_rows = [
            [
                s.strategy.value,
                str(s.total),
                str(s.successful),
                _percent(s.success_rate),
                f"${s.avg_cost_savings:,.2f}",
            ]
            for s in summary.most_effective_strategies
        ]
        lines.append(
            _format_plain_table(
                ["Strategy", "Decided", "Verified", "Success Rate", "Avg Savings"],
                strategy_rows,
                right_align={1, 2, 3, 4},
            )
        )
    lines.append("")

    # 3. Recurrence
    lines.append("## Pattern Recurrence")
    lines.append("")
    lines.append(f"**Overall trend:** {trend.overall_trend}")
    lines.append("")
    for pattern in trend.patterns:
        detail = f"{pattern.recurring_patterns}/{pattern.distinct_patterns} patterns recurred"
        if pattern.recurring_patterns:
            detail += f", every {pattern.avg_days_between_occurrences:.1f} days on average"
        lines.append(f"- **{pattern.pattern_type.value}:** {detail}")
    if trend.patterns:
        lines.append("")

    # 4. Recommendations
    lines.append("## Recommendations")
    lines.append("")
    if summary.recommended_improvements:
        lines.extend(f"- {item}" for item in summary.recommended_improvements)
        lines.append("")
    lines.extend(_recommendation_section("Immediate", recommendations.immediate))
    lines.extend(_recommendation_section("Preventive", recommendations.preventive))
    lines.extend(_recommendation_section("Strategic", recommendations.strategic))
    lines.extend(_recommendation_section("Tooling", recommendations.tooling))

    return "\n".join(lines).rstrip() + "\n"
