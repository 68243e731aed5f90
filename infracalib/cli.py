import logging
from pathlib import Path

import cv2 as cv
import numpy as np
import typer

from infracalib.calibration import InfrastructureCalibration
from infracalib.camera import PinholeCamera
from infracalib.config import CalibrationConfig
from infracalib.errors import CalibrationError

app = typer.Typer()

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")


def _load_cameras(camera_calib: list[Path]) -> list[PinholeCamera]:
    cameras = []
    for path in camera_calib:
        if not path.exists():
            typer.echo(f"Error: camera calibration file {path} does not exist", err=True)
            raise typer.Exit(code=1)
        cameras.append(PinholeCamera.from_npz(path))
    return cameras


def _image_index(data_dir: Path, num_cameras: int) -> dict[int, list[Path | None]]:
    """Map timestamp -> per-camera image path, from ``data_dir/cam<i>/<timestamp>.<ext>``."""
    index: dict[int, list[Path | None]] = {}
    for cam_id in range(num_cameras):
        cam_dir = data_dir / f"cam{cam_id}"
        if not cam_dir.is_dir():
            continue
        for img_path in cam_dir.iterdir():
            if img_path.suffix.lower() not in IMAGE_SUFFIXES or not img_path.stem.isdigit():
                continue
            index.setdefault(int(img_path.stem), [None] * num_cameras)[cam_id] = img_path
    return dict(sorted(index.items()))


def _feed_odometry(calib: InfrastructureCalibration, csv_path: Path) -> None:
    """Rows of ``timestamp,x,y,yaw`` after a header line."""
    rows = np.loadtxt(csv_path, delimiter=",", skiprows=1, ndmin=2)
    for timestamp, x, y, yaw in rows[np.argsort(rows[:, 0], kind="stable")]:
        calib.add_odometry(x, y, yaw, int(timestamp))


def _write_result(calib: InfrastructureCalibration, output: Path) -> None:
    calib.extrinsics.save_json(output)
    for cam_id, pose in enumerate(calib.extrinsics):
        typer.echo(f"  cam{cam_id}: q(xyzw)={np.round(pose.q, 5).tolist()} t={np.round(pose.t, 4).tolist()}")
    typer.echo(f"Extrinsics written to {output}")


@app.command()
def calibrate(
    map_dir: Path = typer.Argument(..., help="Directory holding reference_map.npz"),
    data_dir: Path = typer.Argument(..., help="Directory with cam<i>/<timestamp>.png images and optional odometry.csv"),
    camera_calib: list[Path] = typer.Option(
        ...,
        "--camera-calib",
        "-c",
        help="Intrinsics (.npz with K and dist) of each camera, in camera order",
    ),
    output: Path = typer.Option(Path("extrinsics.json"), "--output", "-o", help="Output JSON file"),
    save_frame_sets: Path | None = typer.Option(
        None, "--save-frame-sets", help="Also save the localized frame sets to this .npz file"
    ),
    feature_type: str = typer.Option("sift", "--features", "-f", help="Feature extraction method: 'sift' or 'disk'"),
    preprocess: bool = typer.Option(False, "--preprocess", "-p", help="Equalize image histograms before extraction"),
    optimize_scene_points: bool = typer.Option(
        False, "--optimize-scene-points", help="Refine scene points together with extrinsics and trajectory"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log reprojection error diagnostics"),
):
    """Calibrate rig extrinsics by localizing synchronized images against a reference map."""

    if feature_type not in ["sift", "disk"]:
        typer.echo(f"Error: feature_type must be 'sift' or 'disk', got '{feature_type}'", err=True)
        raise typer.Exit(code=1)

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    cfg = CalibrationConfig(
        feature_type=feature_type,  # type: ignore
        preprocess=preprocess,
        optimize_scene_points=optimize_scene_points,
        verbose=verbose,
    )
    cameras = _load_cameras(camera_calib)

    typer.echo("Configuration:")
    typer.echo(f"  Cameras: {len(cameras)}")
    typer.echo(f"  Feature type: {feature_type}")
    typer.echo(f"  Map: {map_dir}")
    typer.echo(f"  Data: {data_dir}")
    typer.echo()

    calib = InfrastructureCalibration(cameras, cfg)
    try:
        calib.load_map(map_dir)
    except CalibrationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    index = _image_index(data_dir, len(cameras))
    typer.echo(f"Localizing {len(index)} image sets from {data_dir}...")
    for timestamp, paths in index.items():
        images = [cv.imread(str(p)) if p is not None else None for p in paths]
        calib.add_frame_set(images, timestamp)
    typer.echo(f"Kept {len(calib.frame_sets)} frame sets.")

    odometry_csv = data_dir / "odometry.csv"
    if odometry_csv.exists():
        _feed_odometry(calib, odometry_csv)

    if save_frame_sets is not None:
        calib.save_frame_sets(save_frame_sets)

    try:
        calib.run()
    except CalibrationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Reprojection error: {calib.reprojection_error()}")
    _write_result(calib, output)


@app.command()
def refine(
    frame_sets: Path = typer.Argument(..., help="Frame sets saved by 'calibrate --save-frame-sets'"),
    camera_calib: list[Path] = typer.Option(
        ...,
        "--camera-calib",
        "-c",
        help="Intrinsics (.npz with K and dist) of each camera, in camera order",
    ),
    output: Path = typer.Option(Path("extrinsics.json"), "--output", "-o", help="Output JSON file"),
    optimize_scene_points: bool = typer.Option(
        False, "--optimize-scene-points", help="Refine scene points together with extrinsics and trajectory"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log reprojection error diagnostics"),
):
    """Re-run initialization and refinement on previously localized frame sets."""

    if not frame_sets.exists():
        typer.echo(f"Error: {frame_sets} does not exist", err=True)
        raise typer.Exit(code=1)

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    cfg = CalibrationConfig(optimize_scene_points=optimize_scene_points, verbose=verbose)
    calib = InfrastructureCalibration(_load_cameras(camera_calib), cfg)
    calib.load_frame_sets(frame_sets)

    try:
        calib.run()
    except CalibrationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Reprojection error: {calib.reprojection_error()}")
    _write_result(calib, output)


if __name__ == "__main__":
    app()
