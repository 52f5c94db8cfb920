"""
Charts — графики по результатам

Отвечает за:
- Оценки по категориям для каждого тега (столбцы)
- Итоговый балл против размера на диске (точки)
- Тепловую карту тег × категория

matplotlib — необязательная зависимость: без неё команда view
работает, но графики не строятся.
"""

import logging
from pathlib import Path
from typing import Optional, List, Dict

import numpy as np

try:
    import matplotlib
    matplotlib.use('Agg')  # Бэкенд без GUI для серверов
    import matplotlib.pyplot as plt
    MATPLOTLIB_AVAILABLE = True
except ImportError:
    MATPLOTLIB_AVAILABLE = False
    plt = None

from ..utils.file_ops import ensure_dir
from .engine import ScoringReport
from .statistics import ResultsSummary


logger = logging.getLogger(__name__)


TAG_COLORS = [
    '#2E86AB', '#A23B72', '#28A745', '#FFC107', '#DC3545',
    '#17A2B8', '#6610F2', '#FD7E14', '#20C997', '#E83E8C',
]

CHART_STYLE = {
    'font.size': 10,
    'axes.labelsize': 11,
    'axes.titlesize': 12,
    'legend.fontsize': 8,
    'figure.dpi': 150,
    'savefig.bbox': 'tight',
}


def _check_matplotlib():
    """Проверить доступность matplotlib"""
    if not MATPLOTLIB_AVAILABLE:
        raise ImportError(
            "matplotlib не установлен. Установите: pip install matplotlib"
        )


def _safe_name(name: str) -> str:
    return name.replace("/", "_").replace(":", "_")


class ChartGenerator:
    """
    Генератор графиков по сводке результатов

    Example:
        generator = ChartGenerator(summary, "reports/charts")
        generator.plot_category_scores()
        generator.generate_all()
    """

    def __init__(
        self,
        summary: ResultsSummary,
        output_dir: str = "reports/charts",
        formats: List[str] = None,
        scoring: Optional[ScoringReport] = None,
    ):
        """
        Args:
            summary: Сводка результатов
            output_dir: Директория для графиков
            formats: Форматы экспорта ["png", "svg"]
            scoring: Оценки относительно базы (для итогового балла)
        """
        _check_matplotlib()
        plt.rcParams.update(CHART_STYLE)

        self.summary = summary
        self.scoring = scoring
        self.output_dir = Path(output_dir)
        self.formats = formats or ["png"]
        self.prefix = _safe_name(summary.model_name or "results")

        ensure_dir(self.output_dir)
        logger.info(f"ChartGenerator инициализирован: {self.output_dir}")

    def _save_figure(self, fig, name: str) -> List[Path]:
        """Сохранить фигуру во всех форматах"""
        paths = []

        for fmt in self.formats:
            path = self.output_dir / f"{self.prefix}_{name}.{fmt}"
            fig.savefig(path, format=fmt)
            paths.append(path)
            logger.debug(f"Сохранён график: {path}")

        plt.close(fig)
        return paths

    def _final_scores(self) -> Dict[str, float]:
        """Итоговый балл: из сравнения с базой, иначе общий балл тега"""
        scores = {tag.tag: tag.overall_score for tag in self.summary.tags}
        if self.scoring is not None:
            for tag_score in self.scoring.tag_scores:
                scores[tag_score.tag] = tag_score.final_score
            scores[self.scoring.base_tag] = 100.0
        return scores

    # =========================================================================
    # Графики
    # =========================================================================

    def plot_category_scores(self) -> List[Path]:
        """Сгруппированные столбцы: категории по оси X, тег — цвет"""
        categories = self.summary.categories
        tags = self.summary.tags
        if not categories or not tags:
            return []

        fig, ax = plt.subplots(figsize=(max(8, len(categories) * 1.2), 5))
        width = 0.8 / len(tags)
        positions = np.arange(len(categories))

        for idx, tag in enumerate(tags):
            values = [tag.category_scores.get(c, 0.0) for c in categories]
            ax.bar(
                positions + idx * width - 0.4 + width / 2,
                values,
                width,
                label=tag.tag,
                color=TAG_COLORS[idx % len(TAG_COLORS)],
            )

        ax.set_xticks(positions)
        ax.set_xticklabels(categories)
        ax.set_ylim(0, 105)
        ax.set_ylabel('Оценка, %')
        ax.set_xlabel('Категория контекста')
        ax.grid(axis='y', linestyle='--', alpha=0.5)
        ax.legend(loc='lower left', ncol=2)

        plt.title('Оценка по категориям контекста', fontweight='bold')
        plt.tight_layout()

        return self._save_figure(fig, "categories")

    def plot_score_vs_size(self) -> List[Path]:
        """Итоговый балл против размера на диске"""
        tags = [t for t in self.summary.tags if t.disk_size_bytes > 0]
        if not tags:
            return []

        scores = self._final_scores()
        sizes = [t.disk_size_bytes / 1024 ** 3 for t in tags]
        values = [scores.get(t.tag, t.overall_score) for t in tags]

        fig, ax = plt.subplots(figsize=(8, 6))
        ax.scatter(sizes, values, s=80, color=TAG_COLORS[0], edgecolors='black', linewidths=0.5)

        for tag, x, y in zip(tags, sizes, values):
            label = tag.quantization_type or tag.tag.split(":")[-1]
            ax.annotate(label, (x, y), textcoords='offset points', xytext=(5, 5), fontsize=8)

        ax.set_xlabel('Размер на диске, GB')
        ax.set_ylabel('Итоговый балл, %')
        ax.set_ylim(0, 105)
        ax.grid(True, linestyle='--', alpha=0.5)

        plt.title('Балл против размера', fontweight='bold')
        plt.tight_layout()

        return self._save_figure(fig, "score_vs_size")

    def plot_category_heatmap(self) -> List[Path]:
        """Тепловая карта: теги × категории -> оценка"""
        categories = self.summary.categories
        tags = self.summary.tags
        if len(categories) < 2 or not tags:
            return []

        data = np.array([
            [tag.category_scores.get(c, np.nan) for c in categories]
            for tag in tags
        ], dtype=float)

        fig, ax = plt.subplots(figsize=(max(8, len(categories) * 1.1), max(4, len(tags) * 0.6)))
        im = ax.imshow(data, cmap='RdYlGn', aspect='auto', vmin=0, vmax=100)

        ax.set_xticks(range(len(categories)))
        ax.set_xticklabels(categories)
        ax.set_yticks(range(len(tags)))
        ax.set_yticklabels([t.tag for t in tags])

        for i in range(len(tags)):
            for j in range(len(categories)):
                value = data[i, j]
                if not np.isnan(value):
                    text_color = 'white' if value < 30 or value > 80 else 'black'
                    ax.text(j, i, f'{value:.0f}', ha='center', va='center', color=text_color, fontsize=8)

        cbar = plt.colorbar(im, ax=ax)
        cbar.set_label('Оценка, %')

        plt.title('Оценки: теги × категории', fontweight='bold')
        plt.xlabel('Категория')
        plt.ylabel('Тег')
        plt.tight_layout()

        return self._save_figure(fig, "heatmap")

    def generate_all(self) -> Dict[str, List[Path]]:
        """Построить все графики; ошибка одного не мешает остальным"""
        charts = {
            "categories": self.plot_category_scores,
            "score_vs_size": self.plot_score_vs_size,
            "heatmap": self.plot_category_heatmap,
        }

        results: Dict[str, List[Path]] = {}
        for name, plot in charts.items():
            try:
                paths = plot()
                if paths:
                    results[name] = paths
                    logger.info(f"График '{name}' сохранён")
            except Exception as e:
                logger.warning(f"Ошибка при создании графика '{name}': {e}")

        return results


def generate_charts(
    summary: ResultsSummary,
    output_dir: str = "reports/charts",
    formats: List[str] = None,
    scoring: Optional[ScoringReport] = None,
) -> Dict[str, List[Path]]:
    """Построить все графики по сводке"""
    generator = ChartGenerator(summary, output_dir, formats, scoring)
    return generator.generate_all()


def check_matplotlib_available() -> bool:
    """Проверить доступность matplotlib"""
    return MATPLOTLIB_AVAILABLE
