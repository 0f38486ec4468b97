"""
Linear land-cover classification pipeline.

Runs the five stages of the land-cover walkthrough as declarative tasks:

1. load_bands: Read band files into one multi-band stack
2. subset: Crop the stack to the study extent
3. classify: k-means clustering of per-pixel spectra
4. reproject: Warp labels to lon/lat with nearest-neighbor resampling
5. render: Draw labels over basemap imagery and save a PNG

Each task remembers its parameters (hashed together with its upstream
tasks). Calling a task again with unchanged inputs returns the result
already computed in this session, so changing only rendering options does
not re-run the clustering. Nothing is written to disk except the rendered
image.

Example:
    from src.landcover.pipeline import LandCoverPipeline, PipelineConfig

    config = PipelineConfig(
        band_dir="data/imagery/LC08_scene",
        pattern="*_B[2-5].TIF",
        band_order=("B2", "B3", "B4", "B5"),
        extent=(330000, 4680000, 345000, 4695000),
        n_clusters=5,
    )
    pipeline = LandCoverPipeline(config)
    pipeline.explain("render")
    output = pipeline.run()
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from rasterio.warp import transform_bounds

from src.config import (
    DEFAULT_BAND_NAMES,
    DEFAULT_BAND_PATTERN,
    DEFAULT_DST_CRS,
    DEFAULT_IMAGERY,
    DEFAULT_MAX_ITER,
    DEFAULT_N_CLUSTERS,
    DEFAULT_OVERLAY_ALPHA,
    DEFAULT_SEED,
    IMAGERY_DIR,
    OUTPUT_DIR,
)
from src.landcover.basemap import fetch_basemap
from src.landcover.classification import ClassificationResult, classify_raster, relabel_by_brightness
from src.landcover.data_loading import load_band_stack
from src.landcover.raster import RasterGrid
from src.landcover.rendering import RasterOverlay, VectorOverlay, render_comparison, render_map
from src.landcover.reprojection import reproject_grid
from src.landcover.subset import crop_to_extent
from src.landcover.vectors import read_vector

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Parameters for one pipeline run. Defaults come from src.config."""

    # load_bands
    band_dir: Path = IMAGERY_DIR
    pattern: str = DEFAULT_BAND_PATTERN
    band_names: Tuple[str, ...] = DEFAULT_BAND_NAMES
    band_order: Optional[Tuple[str, ...]] = None
    recursive: bool = False
    # subset (native CRS of the bands)
    extent: Optional[Tuple[float, float, float, float]] = None
    # classify
    n_clusters: int = DEFAULT_N_CLUSTERS
    seed: Optional[int] = DEFAULT_SEED
    max_iter: int = DEFAULT_MAX_ITER
    n_init: int = 1
    engine: str = "lloyd"
    relabel: bool = True
    # reproject
    dst_crs: str = DEFAULT_DST_CRS
    resolution: Optional[float] = None
    # render
    imagery: Optional[str] = DEFAULT_IMAGERY
    zoom: Optional[int] = None
    alpha: float = DEFAULT_OVERLAY_ALPHA
    class_names: Optional[Tuple[str, ...]] = None
    title: Optional[str] = None
    vector_paths: Tuple[Path, ...] = field(default_factory=tuple)
    comparison: bool = False
    output_path: Path = OUTPUT_DIR / "landcover.png"


@dataclass
class TaskState:
    """Represents execution state of a task."""

    name: str
    depends_on: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)
    reused: bool = False
    computed: bool = False
    result: Any = None
    cache_key: str = ""


class LandCoverPipeline:
    """
    Task executor for the land-cover classification walkthrough.

    Tasks in pipeline:
    1. load_bands: Load and stack band files
    2. subset: Crop to the configured extent (pass-through when none)
    3. classify: k-means land-cover clusters
    4. reproject: Labels to the display CRS (nearest neighbor)
    5. render: Basemap + overlay image
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        source: Optional[RasterGrid] = None,
        reuse_results: bool = True,
        verbose: bool = True,
    ):
        """
        Initialize land-cover pipeline.

        Args:
            config: Run parameters (default: PipelineConfig())
            source: Already-loaded band stack; replaces reading band files
            reuse_results: Reuse task results whose inputs did not change
            verbose: Log execution details
        """
        self.config = config or PipelineConfig()
        self.source = source
        self.reuse_results = reuse_results
        self.verbose = verbose

        # Task state tracking
        self.tasks: Dict[str, TaskState] = {}

        # Define task dependencies (declarative DAG)
        self._task_graph = {
            "load_bands": {
                "depends_on": [],
                "description": "Read band files into one multi-band stack",
            },
            "subset": {
                "depends_on": ["load_bands"],
                "description": "Crop the stack to the study extent",
            },
            "classify": {
                "depends_on": ["subset"],
                "description": "k-means clustering of per-pixel spectra",
            },
            "reproject": {
                "depends_on": ["classify"],
                "description": "Warp labels to the display CRS (nearest neighbor)",
            },
            "render": {
                "depends_on": ["reproject"],
                "description": "Draw labels over basemap imagery and save a PNG",
            },
        }

    def _log(self, msg: str, *args, level: str = "info"):
        """Log message if verbose with lazy formatting."""
        if self.verbose:
            if level == "info":
                logger.info(msg, *args)
            elif level == "debug":
                logger.debug(msg, *args)
            elif level == "warn":
                logger.warning(msg, *args)
            elif level == "error":
                logger.error(msg, *args)

    def _compute_hash(self, *args, **kwargs) -> str:
        """Compute SHA256 hash of arguments."""
        parts = []

        for arg in args:
            if isinstance(arg, np.ndarray):
                parts.append(hashlib.sha256(arg.tobytes()).hexdigest())
            elif isinstance(arg, dict):
                parts.append(
                    hashlib.sha256(
                        json.dumps(arg, sort_keys=True, default=str).encode()
                    ).hexdigest()
                )
            else:
                parts.append(str(arg))

        for key in sorted(kwargs.keys()):
            val = kwargs[key]
            if isinstance(val, np.ndarray):
                parts.append(f"{key}:{hashlib.sha256(val.tobytes()).hexdigest()}")
            elif isinstance(val, dict):
                hash_val = hashlib.sha256(
                    json.dumps(val, sort_keys=True, default=str).encode()
                ).hexdigest()
                parts.append(f"{key}:{hash_val}")
            else:
                parts.append(f"{key}:{val}")

        combined = "|".join(parts)
        return hashlib.sha256(combined.encode()).hexdigest()[:64]

    def _run_task(self, name: str, params: Dict[str, Any], compute):
        """Run a task unless the same inputs were already computed."""
        depends_on = self._task_graph[name]["depends_on"]
        upstream = {dep: self.tasks[dep].cache_key for dep in depends_on}
        key = self._compute_hash(params, **upstream)

        state = self.tasks.get(name)
        if self.reuse_results and state is not None and state.computed and state.cache_key == key:
            self._log("      [Reuse] %s inputs unchanged", name)
            state.reused = True
            return state.result

        result = compute()
        self.tasks[name] = TaskState(
            name=name,
            depends_on=list(depends_on),
            params=params,
            computed=True,
            result=result,
            cache_key=key,
        )
        return result

    # ===== Pipeline Tasks =====

    def load_bands(self) -> RasterGrid:
        """
        Task: Load the multi-band stack.

        Returns:
            Continuous RasterGrid, one band per configured band name
        """
        cfg = self.config
        self._log("[1/5] Loading bands from %s", cfg.band_dir if self.source is None else "memory")

        if self.source is not None:
            params = {"source": self._compute_hash(self.source.data, str(self.source.transform))}
            return self._run_task("load_bands", params, lambda: self.source)

        params = {
            "band_dir": str(cfg.band_dir),
            "pattern": cfg.pattern,
            "band_names": list(cfg.band_names),
            "band_order": list(cfg.band_order) if cfg.band_order else None,
            "recursive": cfg.recursive,
        }
        return self._run_task(
            "load_bands",
            params,
            lambda: load_band_stack(
                cfg.band_dir,
                cfg.pattern,
                cfg.band_names,
                band_order=cfg.band_order,
                recursive=cfg.recursive,
            ),
        )

    def subset(self) -> RasterGrid:
        """
        Task: Crop the stack to the configured extent.

        Returns the loaded stack unchanged when no extent is configured.
        """
        grid = self.load_bands()
        extent = self.config.extent
        self._log("[2/5] Subsetting to extent %s", extent)

        if extent is None:
            return self._run_task("subset", {"extent": None}, lambda: grid)
        return self._run_task(
            "subset", {"extent": list(extent)}, lambda: crop_to_extent(grid, extent)
        )

    def classify(self) -> ClassificationResult:
        """Task: Cluster pixels into land-cover classes."""
        grid = self.subset()
        cfg = self.config
        self._log("[3/5] Classifying into %d clusters (%s)", cfg.n_clusters, cfg.engine)

        params = {
            "n_clusters": cfg.n_clusters,
            "seed": cfg.seed,
            "max_iter": cfg.max_iter,
            "n_init": cfg.n_init,
            "engine": cfg.engine,
            "relabel": cfg.relabel,
        }

        def compute():
            result = classify_raster(
                grid,
                cfg.n_clusters,
                seed=cfg.seed,
                max_iter=cfg.max_iter,
                n_init=cfg.n_init,
                engine=cfg.engine,
            )
            if not result.converged:
                self._log("      Clustering stopped at the iteration cap", level="warn")
            return relabel_by_brightness(result) if cfg.relabel else result

        return self._run_task("classify", params, compute)

    def reproject(self) -> RasterGrid:
        """Task: Warp cluster labels to the display CRS."""
        labels = self.classify().grid
        cfg = self.config
        self._log("[4/5] Reprojecting labels to %s", cfg.dst_crs)

        params = {"dst_crs": str(cfg.dst_crs), "resolution": cfg.resolution}
        return self._run_task(
            "reproject",
            params,
            lambda: reproject_grid(labels, cfg.dst_crs, resolution=cfg.resolution),
        )

    def render(self) -> Path:
        """
        Task: Render the reprojected labels over basemap imagery.

        Returns:
            Path to the written PNG

        Raises:
            ValueError: If a comparison is requested with neither imagery nor
                vector layers, checked before any upstream task runs
        """
        cfg = self.config
        if cfg.comparison and cfg.imagery is None and not cfg.vector_paths:
            raise ValueError(
                "Comparison rendering needs a basemap or vector layers for its reference panel"
            )

        labels = self.reproject()
        classification = self.tasks["classify"].result
        self._log("[5/5] Rendering to %s", cfg.output_path)

        params = {
            "imagery": cfg.imagery,
            "zoom": cfg.zoom,
            "alpha": cfg.alpha,
            "class_names": list(cfg.class_names) if cfg.class_names else None,
            "title": cfg.title,
            "vector_paths": [str(p) for p in cfg.vector_paths],
            "comparison": cfg.comparison,
            "output_path": str(cfg.output_path),
        }

        def compute():
            basemap = None
            if cfg.imagery is not None:
                lonlat_bounds = transform_bounds(labels.crs, "EPSG:4326", *labels.bounds)
                basemap = fetch_basemap(
                    lonlat_bounds, zoom=cfg.zoom, imagery=cfg.imagery, dst_crs=labels.crs
                )

            vectors = [
                VectorOverlay(read_vector(path, crs=labels.crs), label=Path(path).stem)
                for path in cfg.vector_paths
            ]
            overlay = RasterOverlay(
                labels,
                alpha=cfg.alpha,
                class_names=cfg.class_names,
                n_classes=classification.n_clusters,
                label="Land cover",
            )
            title = cfg.title or f"k-means land cover (k={classification.n_clusters})"

            if cfg.comparison:
                return render_comparison(
                    cfg.output_path,
                    overlay,
                    basemap=basemap,
                    vectors=vectors,
                    titles=("Basemap", title),
                )
            return render_map(
                cfg.output_path, basemap=basemap, rasters=[overlay], vectors=vectors, title=title
            )

        return self._run_task("render", params, compute)

    # ===== Public API =====

    def run(self) -> Path:
        """Run every task up to render and return the output image path."""
        output = self.render()
        self._log("Pipeline finished: %s", output)
        return output

    def explain(self, task_name: str) -> None:
        """
        Explain what would execute to build a task.

        Shows:
        - Task dependencies
        - Execution order
        - Which tasks already hold a result in this session
        """
        if task_name not in self._task_graph:
            print(f"\nUnknown task: {task_name}")
            print(f"Available tasks: {', '.join(self._task_graph.keys())}")
            return

        print("\n" + "=" * 70)
        print(f"Execution Plan for: {task_name}")
        print("=" * 70 + "\n")

        task_info = self._task_graph[task_name]
        print(f"Task: {task_name}")
        print(f"Description: {task_info['description']}")

        if task_info["depends_on"]:
            print("\nDependencies:")
            for dep in task_info["depends_on"]:
                print(f"  - {dep}")

        order = self._compute_execution_order(task_name)
        print("\nExecution order:")
        for i, task in enumerate(order, 1):
            status = "computed" if task in self.tasks else "pending"
            print(f"  {i}. {task} [{status}]")

    def _compute_execution_order(self, task_name: str) -> List[str]:
        """Topologically sort tasks by dependency."""
        visited = set()
        order = []

        def visit(task: str):
            if task in visited:
                return
            visited.add(task)

            task_info = self._task_graph.get(task)
            if task_info:
                for dep in task_info["depends_on"]:
                    visit(dep)

            order.append(task)

        visit(task_name)
        return order

    def config_dict(self) -> Dict[str, Any]:
        """Config as plain JSON-friendly values."""
        return json.loads(json.dumps(asdict(self.config), default=str))

    def clear(self) -> int:
        """Forget all task results. Returns how many were dropped."""
        count = len(self.tasks)
        self.tasks.clear()
        self._log("Cleared %d task results", count)
        return count
