from __future__ import annotations

import csv
import dataclasses
import itertools
import logging
import os

from river import metrics, stats
from river.datasets import synth

from online_qrf.conformal import OoBConformalRegressor
from online_qrf.forest import OnlineQRF

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class IntervalResults:
    coverage: stats.Mean = dataclasses.field(default_factory=stats.Mean)
    width: stats.Mean = dataclasses.field(default_factory=stats.Mean)
    mae: metrics.MAE = dataclasses.field(default_factory=metrics.MAE)
    width_curve: list = dataclasses.field(default_factory=list)

    def update(self, y, interval):
        lower, upper = interval
        self.coverage.update(float(lower <= y <= upper))
        self.width.update(upper - lower)
        self.mae.update(y, (lower + upper) / 2)
        self.width_curve.append(self.width.get())

    def as_row(self) -> dict:
        return {
            "coverage": f"{self.coverage.get():.4f}",
            "mean_width": f"{self.width.get():.4f}",
            "MAE": f"{self.mae.get():.4f}",
        }


def prequential_interval_evaluation(model, stream, max_instances: int | None = None) -> IntervalResults:
    """Test-then-train loop over `stream` for a model returning (lower, upper) intervals."""
    results = IntervalResults()
    for i, (x, y) in enumerate(itertools.islice(stream, max_instances)):
        # Nothing to evaluate before the first update
        if i > 0:
            results.update(y, model.predict_one(x))
        model.learn_one(x, y)
    return results


def plot_width_curves(name: str, curves: dict[str, list]):
    import matplotlib.pyplot as plt

    plt.figure(figsize=(10, 5))
    for label, curve in curves.items():
        plt.plot(curve, label=label)
    plt.title(f"Mean interval width - {name}")
    plt.xlabel("Instances Seen")
    plt.ylabel("Width")
    plt.legend()
    plt.grid(True)
    plt.tight_layout()
    plt.show()


def main(n_instances: int = 5_000, csv_path: str = "interval_results.csv", plot: bool = True):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    fieldnames = ["dataset", "model", "coverage", "mean_width", "MAE"]
    if not os.path.exists(csv_path):
        with open(csv_path, mode="w", newline="") as f:
            csv.DictWriter(f, fieldnames=fieldnames).writeheader()

    datasets = [
        ("friedman", synth.Friedman(seed=1)),
        ("planes2d", synth.Planes2D(seed=1)),
    ]
    for name, dataset in datasets:
        forest = OnlineQRF(n_models=10, confidence_level=0.9, grace_period=50, seed=42)
        conformal = OoBConformalRegressor(
            forest=OnlineQRF(n_models=10, confidence_level=0.9, grace_period=50, seed=42),
            confidence_level=0.9,
            max_calibration_instances=1_000,
        )
        with forest, conformal:
            sketch_results = prequential_interval_evaluation(forest, dataset.take(n_instances))
            conformal_results = prequential_interval_evaluation(conformal, dataset.take(n_instances))
            logger.info("%s calibration: %s", name, conformal.model_measurements())

        logger.info("[%s] Sketch forest: %s", name.upper(), sketch_results.as_row())
        logger.info("[%s] OoB conformal: %s", name.upper(), conformal_results.as_row())

        with open(csv_path, mode="a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writerow({"dataset": name, "model": "OnlineQRF", **sketch_results.as_row()})
            writer.writerow({"dataset": name, "model": "OoBConformal", **conformal_results.as_row()})

        if plot:
            plot_width_curves(
                name,
                {"OnlineQRF": sketch_results.width_curve, "OoBConformal": conformal_results.width_curve},
            )

    logger.info("All results saved to %s", csv_path)


if __name__ == "__main__":
    main()
