import pathlib
import sys
from collections import Counter
from contextlib import contextmanager
from functools import partial

import click
import cloup
import numpy as np
from tqdm import tqdm

from ardf_forcemap.forcemap import ForceMap
from ardf_forcemap.records import BlankSlot, MalformedRecord, decode_all

# must take two positional arguments, fname and array
EXPORTER_MAP = {
    "txt": partial(np.savetxt, fmt="%.8g"),
    "tsv": partial(np.savetxt, fmt="%.8g", delimiter="\t"),
    "csv": partial(np.savetxt, fmt="%.8g", delimiter=","),
    "npy": np.save,
}


def echo(message=None, file=None, nl=True, err=False, color=None):
    with tqdm.external_write_mode(file=sys.stderr if err else sys.stdout):
        click.echo(message, file, nl, err, color)


def mmap_path_read_only(path):
    import mmap

    with open(path, mode="rb", buffering=0) as file:
        return mmap.mmap(file.fileno(), length=0, access=mmap.ACCESS_READ)


@contextmanager
def reported_errors(verbose):
    """Turn decode failures into a one line message unless verbose."""
    try:
        yield
    except ValueError as e:
        if verbose:
            raise
        message = e.args[0] if e.args else ""
        raise click.ClickException(f"{type(e).__name__}: {message}") from e


def build(data, filename, disable_progress):
    with tqdm(
        total=len(data),
        desc=f"Decoding {filename.name}",
        unit="B",
        unit_scale=True,
        leave=False,
        disable=disable_progress,
    ) as pbar:
        return ForceMap.build(data, pbar=pbar)


def describe(record, max_depth=None):
    stack = [(record, 0)]
    while stack:
        child, depth = stack.pop()
        indent = "  " * depth
        if isinstance(child, BlankSlot):
            yield f"{indent}blank slot at {child.offset}"
            continue
        report = f"{indent}{child.tag} at {child.offset} size {child.declared_size}"
        if child.children:
            report += f", containing {len(child.children)} entries"
        if child.payload is not None:
            report += f", {child.payload!r}"
        yield report
        if max_depth is None or depth < max_depth:
            stack.extend((grandchild, depth + 1) for grandchild in reversed(child.children))


def resolve_channel(fmap: ForceMap, channel):
    if channel is None:
        return None
    try:
        return int(channel)
    except ValueError:
        pass
    try:
        return fmap.channel_names.index(channel)
    except ValueError:
        raise click.BadParameter(
            f"{channel!r} is not one of {list(fmap.channel_names)}",
            param_hint="--channel",
        ) from None


FILENAME = click.Path(
    exists=True,
    file_okay=True,
    dir_okay=False,
    readable=True,
    path_type=pathlib.Path,
)


@cloup.group(epilog="Nothing here writes ARDF files; they are only read.")
@click.option("--verbose", is_flag=True, help="Chatty output and full tracebacks.")
@click.option("--disable-progress", is_flag=True)
@click.pass_context
def main(ctx, verbose, disable_progress):
    """Inspect Asylum Research ARDF force map files."""
    ctx.obj = dict(verbose=verbose, disable_progress=disable_progress)


@main.command()
@click.argument("filename", type=FILENAME)
@click.option("--verify", is_flag=True, help="Check the checksum of every record.")
@click.pass_obj
def info(obj, filename: pathlib.Path, verify):
    """Summarize the force map in FILENAME."""
    verbose = obj["verbose"]
    with reported_errors(verbose), mmap_path_read_only(filename) as data:
        fmap = build(data, filename, obj["disable_progress"])
        bad = 0
        if verify:
            for record in tqdm(
                list(fmap.iter_records()),
                desc="Verifying checksums",
                unit=" records",
                leave=False,
                disable=obj["disable_progress"],
            ):
                try:
                    record.verify_checksum(data)
                except MalformedRecord as e:
                    bad += 1
                    if verbose:
                        echo(e.args[0] + f" {record.tag} at {record.offset}", err=True)

    echo(f"{filename.name}: {fmap.width} x {fmap.height} pixels")
    echo("Channels: " + ", ".join(fmap.channel_names))
    echo("Segments: " + ", ".join(fmap.segment_names))
    tags = Counter(record.tag for record in fmap.iter_records())
    for tag, count in sorted(tags.items()):
        echo(f"  {tag}: {count}")
    if verify:
        echo(f"Bad checksums: {bad}")
        if bad:
            sys.exit(1)


@main.command()
@click.argument("filename", type=FILENAME)
@click.option("--depth", type=click.IntRange(min=0), help="Stop nesting here.")
@click.pass_obj
def tree(obj, filename: pathlib.Path, depth):
    """Dump the decoded record tree of FILENAME for debugging."""
    with reported_errors(obj["verbose"]), mmap_path_read_only(filename) as data:
        records = decode_all(data)
    for record in records:
        for line in describe(record, max_depth=depth):
            echo(line)


@main.command()
@click.argument("filename", type=FILENAME)
@click.argument("x", type=int)
@click.argument("y", type=int)
@cloup.option_group(
    "Selection",
    click.option("--segment", type=click.IntRange(0, 2)),
    click.option("--channel", help="Channel index or name."),
)
@cloup.option_group(
    "Output",
    click.option(
        "--output-path",
        type=click.Path(file_okay=False, dir_okay=True, path_type=pathlib.Path),
    ),
    click.option("--output-type", type=click.Choice(EXPORTER_MAP), default="txt"),
)
@click.pass_obj
def curve(obj, filename: pathlib.Path, x, y, segment, channel, output_path, output_type):
    """Print or export the curve segments at pixel X, Y of FILENAME.

    Without --output-path, each segment is echoed as one line of numbers.
    With it, one file per segment is written into that directory.
    """
    verbose = obj["verbose"]
    with reported_errors(verbose), mmap_path_read_only(filename) as data:
        fmap = build(data, filename, obj["disable_progress"])
    found = fmap.at(x, y, segment, resolve_channel(fmap, channel))
    if not found:
        raise click.ClickException(f"No data at x={x}, y={y}.")

    if output_path is not None:
        if verbose:
            echo("Creating " + str(output_path))
        output_path.mkdir(parents=True, exist_ok=True)

    for i, match in enumerate(found):
        if segment is None:
            numbered = enumerate(match)
        else:
            numbered = [(segment, match)]
        for s, arr in numbered:
            if output_path is None:
                echo(f"# match {i} segment {s} ({arr.size} points)")
                echo(" ".join(f"{v:.8g}" for v in arr))
                continue
            export_path = output_path / (
                f"{filename.stem}_x{x}_y{y}_{i}_seg{s}.{output_type}"
            )
            if verbose:
                echo("Writing " + str(export_path))
            EXPORTER_MAP[output_type](export_path, arr)
