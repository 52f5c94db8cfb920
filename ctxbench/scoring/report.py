"""
Report — просмотр и экспорт результатов

Отвечает за:
- Таблицы в консоли (rich): теги, категории, оценки относительно базового тега
- Экспорт сводки в JSON, Markdown и HTML
"""

import html
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List

from rich.console import Console
from rich.table import Table

from ..utils.file_ops import save_json, ensure_dir
from .engine import ScoringReport
from .statistics import (
    ResultsSummary,
    category_statistics,
    format_response_time,
    format_size,
    format_speed,
    score_color,
)


logger = logging.getLogger(__name__)

console = Console()

REPORT_FORMATS = ("json", "md", "html")


def _score_cell(score: Optional[float]) -> str:
    if score is None:
        return "[dim]-[/dim]"
    return f"[{score_color(score)}]{score:.1f}%[/{score_color(score)}]"


def _report_name(summary: ResultsSummary) -> str:
    base = summary.model_name or summary.test_suite_name or "results"
    return base.replace("/", "_").replace(":", "_")


# =============================================================================
# Консоль
# =============================================================================

def print_summary_table(summary: ResultsSummary) -> None:
    """Теги по убыванию общего балла"""
    if not summary.tags:
        console.print("[yellow]В файле результатов нет тегов[/yellow]")
        return

    title = f"{summary.model_name} — {summary.test_type or summary.test_suite_name}"
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Тег", style="bright_white")
    table.add_column("Квант.", justify="center")
    table.add_column("Размер", justify="right")
    table.add_column("Балл", justify="right")
    table.add_column("Рейтинг")
    table.add_column("Верно", justify="right")
    table.add_column("Статус", justify="center")

    for index, tag in enumerate(summary.tags, 1):
        table.add_row(
            str(index),
            tag.tag,
            tag.quantization_type or "-",
            format_size(tag.disk_size_bytes) if tag.disk_size_bytes else "-",
            _score_cell(tag.overall_score),
            tag.rating,
            f"{tag.correct_answers}/{tag.total_questions}",
            "[green]готов[/green]" if tag.is_complete else "[yellow]частично[/yellow]",
        )

    console.print()
    console.print(table)
    if summary.judge_model:
        console.print(f"[dim]Судья: {summary.judge_model} ({summary.judge_provider or 'ollama'})[/dim]")
    console.print()


def print_category_table(summary: ResultsSummary) -> None:
    """Оценки по категориям контекста для каждого тега"""
    if not summary.tags or not summary.categories:
        return

    table = Table(title="Оценки по категориям", show_header=True, header_style="bold cyan")
    table.add_column("Тег", style="bright_white")
    for category in summary.categories:
        table.add_column(category, justify="right")

    for tag in summary.tags:
        table.add_row(tag.tag, *[_score_cell(tag.category_scores.get(c)) for c in summary.categories])

    stats = category_statistics(summary)
    if len(summary.tags) > 1:
        table.add_section()
        table.add_row(
            "[bold]Среднее[/bold]",
            *[_score_cell(stats[c].average) if c in stats else "-" for c in summary.categories],
        )

    console.print(table)
    console.print()


def print_performance_table(summary: ResultsSummary) -> None:
    """Худшие скорости и среднее время ответа по категориям"""
    table = Table(title="Производительность (минимум ток/с, среднее время)", header_style="bold cyan")
    table.add_column("Тег", style="bright_white")
    for category in summary.categories:
        table.add_column(category, justify="right")

    for tag in summary.tags:
        cells = []
        for category in summary.categories:
            prompt = tag.min_prompt_toks_per_sec.get(category)
            evaluation = tag.min_eval_toks_per_sec.get(category)
            response = tag.avg_response_time_ms.get(category)
            if prompt is None and evaluation is None:
                cells.append("-")
                continue
            cells.append(
                f"p:{format_speed(prompt or 0)} e:{format_speed(evaluation or 0)}"
                + (f" {format_response_time(response)}" if response else "")
            )
        table.add_row(tag.tag, *cells)

    console.print(table)
    console.print()


def print_scoring_table(report: ScoringReport) -> None:
    """Оценки тегов относительно базового"""
    table = Table(
        title=f"Сравнение с базовым тегом {report.base_tag}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Тег", style="bright_white")
    table.add_column("Квант.", justify="center")
    table.add_column("Размер", justify="right")
    table.add_column("Метрики", justify="right")
    table.add_column("Судья", justify="right")
    table.add_column("Итог", justify="right")
    table.add_column("Eval %", justify="right")
    table.add_column("Prompt %", justify="right")

    for tag in sorted(report.tag_scores, key=lambda t: t.final_score, reverse=True):
        table.add_row(
            tag.tag,
            tag.quantization_type or "-",
            format_size(tag.disk_size_bytes) if tag.disk_size_bytes else "-",
            _score_cell(tag.total_confidence_score),
            _score_cell(tag.average_judgment_score),
            _score_cell(tag.final_score),
            f"{tag.eval_performance_percent:.0f}%" if tag.eval_performance_percent is not None else "-",
            f"{tag.prompt_performance_percent:.0f}%" if tag.prompt_performance_percent is not None else "-",
        )

    console.print()
    console.print(table)
    console.print(
        f"[dim]База: eval {format_speed(report.base_eval_tokens_per_second)} ток/с, "
        f"prompt {format_speed(report.base_prompt_tokens_per_second)} ток/с[/dim]"
    )
    console.print()


# =============================================================================
# Экспорт
# =============================================================================

HTML_TEMPLATE = '''<!DOCTYPE html>
<html lang="ru">
<head>
    <meta charset="UTF-8">
    <title>{{ title }}</title>
    <style>
        body { font-family: -apple-system, "Segoe UI", sans-serif; margin: 2rem; color: #343A40; }
        h1 { font-size: 1.6rem; margin-bottom: 0.2rem; }
        .meta { color: #6c757d; margin-bottom: 1.5rem; }
        table { border-collapse: collapse; margin-bottom: 2rem; min-width: 60%; }
        th, td { border: 1px solid #dee2e6; padding: 0.4rem 0.8rem; text-align: right; }
        th { background: #F8F9FA; }
        td.name { text-align: left; font-weight: bold; }
        .high { color: #28A745; }
        .mid { color: #d39e00; }
        .low { color: #DC3545; }
    </style>
</head>
<body>
    <h1>{{ title }}</h1>
    <div class="meta">{{ meta }}</div>
    <h2>Теги</h2>
    <table>
        <tr><th>#</th><th>Тег</th><th>Квант.</th><th>Размер</th><th>Балл</th><th>Рейтинг</th><th>Верно</th></tr>
        {{ tag_rows }}
    </table>
    <h2>Категории</h2>
    <table>
        <tr><th>Тег</th>{{ category_headers }}</tr>
        {{ category_rows }}
    </table>
    <div class="meta">Сгенерировано {{ generated_at }}</div>
</body>
</html>
'''


def _css_class(score: float) -> str:
    if score >= 85:
        return "high"
    if score >= 60:
        return "mid"
    return "low"


class ReportGenerator:
    """
    Экспорт сводки результатов

    Example:
        generator = ReportGenerator("reports")
        generator.save_markdown(summary)
        generator.save_html(summary)
    """

    def __init__(self, reports_dir: str = "reports"):
        self.reports_dir = Path(reports_dir)
        ensure_dir(self.reports_dir)

    def save_json(self, summary: ResultsSummary, scoring: Optional[ScoringReport] = None) -> Path:
        """Сводка (и оценки относительно базы) в JSON"""
        data = {"summary": summary.model_dump(mode="json")}
        if scoring is not None:
            data["scoring"] = scoring.model_dump(mode="json")

        path = self.reports_dir / f"{_report_name(summary)}_report.json"
        save_json(data, path)
        logger.info(f"JSON отчёт сохранён: {path}")
        return path

    def render_markdown(self, summary: ResultsSummary, scoring: Optional[ScoringReport] = None) -> str:
        lines = [f"# {summary.model_name}", ""]
        if summary.test_type:
            lines.append(f"Тест: {summary.test_type}  ")
        if summary.judge_model:
            lines.append(f"Судья: {summary.judge_model} ({summary.judge_provider or 'ollama'})  ")
        lines.append(f"Тегов: {summary.total_tags}")
        lines.append("")

        lines.append("| # | Тег | Квант. | Размер | Балл | Рейтинг | Верно |")
        lines.append("|---|-----|--------|--------|------|---------|-------|")
        for index, tag in enumerate(summary.tags, 1):
            lines.append(
                f"| {index} | {tag.tag} | {tag.quantization_type or '-'} | "
                f"{format_size(tag.disk_size_bytes) if tag.disk_size_bytes else '-'} | "
                f"{tag.overall_score:.1f}% | {tag.rating} | {tag.correct_answers}/{tag.total_questions} |"
            )
        lines.append("")

        if summary.categories:
            lines.append("## Категории")
            lines.append("")
            lines.append("| Тег | " + " | ".join(summary.categories) + " |")
            lines.append("|-----|" + "|".join("---" for _ in summary.categories) + "|")
            for tag in summary.tags:
                cells = [_format_optional(tag.category_scores.get(c)) for c in summary.categories]
                lines.append(f"| {tag.tag} | " + " | ".join(cells) + " |")
            lines.append("")

        if scoring is not None and scoring.tag_scores:
            lines.append(f"## Сравнение с {scoring.base_tag}")
            lines.append("")
            lines.append("| Тег | Метрики | Судья | Итог | Eval % | Prompt % |")
            lines.append("|-----|---------|-------|------|--------|----------|")
            for tag in sorted(scoring.tag_scores, key=lambda t: t.final_score, reverse=True):
                lines.append(
                    f"| {tag.tag} | {tag.total_confidence_score:.1f}% | "
                    f"{_format_optional(tag.average_judgment_score)} | {tag.final_score:.1f}% | "
                    f"{_format_optional(tag.eval_performance_percent)} | "
                    f"{_format_optional(tag.prompt_performance_percent)} |"
                )
            lines.append("")

        return "\n".join(lines)

    def save_markdown(self, summary: ResultsSummary, scoring: Optional[ScoringReport] = None) -> Path:
        path = self.reports_dir / f"{_report_name(summary)}_report.md"
        path.write_text(self.render_markdown(summary, scoring), encoding="utf-8")
        logger.info(f"Markdown отчёт сохранён: {path}")
        return path

    def render_html(self, summary: ResultsSummary) -> str:
        tag_rows = []
        for index, tag in enumerate(summary.tags, 1):
            tag_rows.append(
                f'<tr><td>{index}</td><td class="name">{html.escape(tag.tag)}</td>'
                f'<td>{html.escape(tag.quantization_type or "-")}</td>'
                f'<td>{format_size(tag.disk_size_bytes) if tag.disk_size_bytes else "-"}</td>'
                f'<td class="{_css_class(tag.overall_score)}">{tag.overall_score:.1f}%</td>'
                f'<td>{tag.rating}</td><td>{tag.correct_answers}/{tag.total_questions}</td></tr>'
            )

        category_rows = []
        for tag in summary.tags:
            cells = []
            for category in summary.categories:
                score = tag.category_scores.get(category)
                if score is None:
                    cells.append("<td>-</td>")
                else:
                    cells.append(f'<td class="{_css_class(score)}">{score:.1f}%</td>')
            category_rows.append(f'<tr><td class="name">{html.escape(tag.tag)}</td>{"".join(cells)}</tr>')

        meta = [html.escape(summary.test_type or summary.test_suite_name or "")]
        if summary.judge_model:
            meta.append(f"судья {html.escape(summary.judge_model)}")
        meta.append(f"тегов: {summary.total_tags}")

        replacements = {
            "{{ title }}": html.escape(summary.model_name or "ctxbench"),
            "{{ meta }}": ", ".join(m for m in meta if m),
            "{{ tag_rows }}": "\n        ".join(tag_rows),
            "{{ category_headers }}": "".join(f"<th>{html.escape(c)}</th>" for c in summary.categories),
            "{{ category_rows }}": "\n        ".join(category_rows),
            "{{ generated_at }}": datetime.now().strftime("%d.%m.%Y %H:%M"),
        }

        page = HTML_TEMPLATE
        for key, value in replacements.items():
            page = page.replace(key, value)
        return page

    def save_html(self, summary: ResultsSummary) -> Path:
        path = self.reports_dir / f"{_report_name(summary)}_report.html"
        path.write_text(self.render_html(summary), encoding="utf-8")
        logger.info(f"HTML отчёт сохранён: {path}")
        return path


def _format_optional(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.1f}%"


def generate_report(
    summary: ResultsSummary,
    reports_dir: str = "reports",
    formats: List[str] = None,
    scoring: Optional[ScoringReport] = None,
) -> Dict[str, Path]:
    """
    Сохранить отчёты в нескольких форматах

    Args:
        summary: Сводка результатов
        reports_dir: Директория для отчётов
        formats: Форматы ["json", "md", "html"]
        scoring: Оценки относительно базового тега

    Returns:
        Словарь {формат: путь}
    """
    if formats is None:
        formats = ["json", "md"]

    generator = ReportGenerator(reports_dir)
    paths: Dict[str, Path] = {}

    if "json" in formats:
        paths["json"] = generator.save_json(summary, scoring)

    if "md" in formats:
        paths["md"] = generator.save_markdown(summary, scoring)

    if "html" in formats:
        paths["html"] = generator.save_html(summary)

    return paths
