"""CLI entry-point for the measurement pipeline."""

from __future__ import annotations

import logging

import click

from packages.core.cloud import ClusteringKind, FilterKind
from packages.core.errors import ValidationFailed
from packages.pipeline.process import RoomResult, process_building, process_cloud, process_room_to_json


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def main(verbose: bool):
    """Room scan measurement pipeline."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s | %(name)s | %(message)s",
    )


@main.command()
@click.argument("snapshot_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--cloud", "cloud_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Point cloud (.ply/.e57) used as opening evidence.")
@click.option("-o", "--output", "output_file", default=None, help="Output JSON path.")
@click.option("--strict", is_flag=True, help="Exit non-zero when validation finds a critical issue.")
def measure(snapshot_file: str, cloud_file: str | None, output_file: str | None, strict: bool):
    """Measure one room snapshot and write its parametric JSON."""
    json_str = process_room_to_json(snapshot_file, output_path=output_file, cloud_path=cloud_file)
    click.echo(json_str)
    if strict:
        result = RoomResult.model_validate_json(json_str)
        if result.failure is not None:
            raise click.ClickException(f"{result.failure.message}: {result.failure.error}")
        try:
            result.validation.raise_if_invalid()
        except ValidationFailed as exc:
            raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("snapshot_files", nargs=-1, required=True, type=click.Path(dir_okay=False))
@click.option("-o", "--output", "output_file", default=None, help="Output JSON path.")
@click.option("--workers", default=1, show_default=True, help="Rooms extracted in parallel.")
def building(snapshot_files: tuple[str, ...], output_file: str | None, workers: int):
    """Measure several room snapshots and aggregate them into one building."""
    result = process_building(list(snapshot_files), max_workers=workers)
    json_str = result.model_dump_json(indent=2)
    if output_file:
        with open(output_file, "w") as fh:
            fh.write(json_str)
    click.echo(json_str)


@main.command()
@click.argument("cloud_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--filter", "filters", multiple=True,
              type=click.Choice([k.value for k in FilterKind]),
              help="Filters to apply in order (default: outlier removal, downsampling).")
@click.option("--clustering", default=ClusteringKind.DBSCAN.value, show_default=True,
              type=click.Choice([k.value for k in ClusteringKind]))
@click.option("--no-mesh", is_flag=True, help="Skip mesh reconstruction.")
def cloud(cloud_file: str, filters: tuple[str, ...], clustering: str, no_mesh: bool):
    """Cluster, analyse and mesh a point cloud; print a JSON summary."""
    kwargs = {}
    if filters:
        kwargs["filters"] = [FilterKind(f) for f in filters]
    summary = process_cloud(
        cloud_file,
        clustering=ClusteringKind(clustering),
        with_mesh=not no_mesh,
        **kwargs,
    )
    click.echo(summary.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
