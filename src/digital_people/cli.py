from __future__ import annotations

import json
import signal
import sys
import time
from pathlib import Path

import click

from digital_people.errors import DigitalPeopleError, QueueError, StoreUnavailable
from digital_people.jobs.archive import archive_results
from digital_people.jobs.models import TaskRequest, TaskStatus
from digital_people.utils.log import logger, set_log_level


def _ctx():
    from digital_people.context import build_context

    return build_context()


def _echo_status(st: TaskStatus) -> None:
    click.echo(json.dumps(st.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """Talking-head video synthesis task queue."""
    if log_level:
        set_log_level(log_level)


@cli.command("worker")
@click.option("--once", is_flag=True, default=False, help="Process one task, then exit.")
@click.option("--skip-ffmpeg-check", is_flag=True, default=False)
def worker(once: bool, skip_ffmpeg_check: bool) -> None:
    """Run the consumer loop (one task at a time)."""
    from digital_people.utils.ffmpeg_safe import FFmpegError, ensure_ffmpeg

    if not skip_ffmpeg_check:
        try:
            logger.info("ffmpeg_ok", version=ensure_ffmpeg())
        except FFmpegError as ex:
            raise click.ClickException(f"ffmpeg unavailable: {ex}") from ex

    app = _ctx()
    try:
        app.check_store()
    except StoreUnavailable as ex:
        raise click.ClickException(str(ex)) from ex
    app.ensure_dirs()
    loop = app.consumer()
    if once:
        try:
            app.queue.connect()
        except QueueError as ex:
            raise click.ClickException(str(ex)) from ex
        loop.run_once()
        app.close()
        return

    try:
        loop.start()
    except QueueError as ex:
        raise click.ClickException(f"queue unavailable at startup: {ex}") from ex

    def _shutdown(signum, _frame) -> None:
        logger.info("worker_signal", signal=signum)
        loop.stop(timeout_s=0)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    while not loop.stopping():
        time.sleep(0.5)
    loop.join()
    app.close()


@cli.command("submit")
@click.option("--audio", "audio_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--video", "video_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--audio-template", default="", help="Registered audio template name.")
@click.option("--video-template", default="", help="Registered video template name.")
@click.option("--speaker", default="", show_default=True)
@click.option("--text", default="")
@click.option("--use-tts/--no-tts", default=True, show_default=True)
@click.option("--copy-to-company", is_flag=True, default=False)
def submit(
    audio_path: str | None,
    video_path: str | None,
    audio_template: str,
    video_template: str,
    speaker: str,
    text: str,
    use_tts: bool,
    copy_to_company: bool,
) -> None:
    """Create a task and publish it to the work queue."""
    if use_tts and not text.strip():
        raise click.ClickException("--text is required unless --no-tts is given")
    req = TaskRequest(
        speaker=speaker,
        text=text,
        use_tts=use_tts,
        copy_to_company=copy_to_company,
        audio_template_name=audio_template.strip(),
        video_template_name=video_template.strip(),
    )
    app = _ctx()
    try:
        st = app.service.submit(req, audio_path=audio_path, video_path=video_path)
    except DigitalPeopleError as ex:
        raise click.ClickException(str(ex)) from ex
    click.echo(json.dumps({"task_id": st.task_id, "status": st.status.value}, ensure_ascii=False))


@cli.command("status")
@click.argument("task_id")
def status(task_id: str) -> None:
    """Show one task's status record."""
    try:
        _echo_status(_ctx().service.get(task_id))
    except DigitalPeopleError as ex:
        raise click.ClickException(str(ex)) from ex


@cli.command("list")
@click.option("--limit", type=int, default=50, show_default=True)
def list_tasks(limit: int) -> None:
    """List tasks, newest first."""
    for st in _ctx().service.list()[: max(0, limit)]:
        click.echo(
            f"{st.task_id}\t{st.status.value}\t{st.progress:>3}%\t{st.current_step}\t{st.error or st.result_path}"
        )


@cli.command("retry")
@click.argument("task_id")
def retry(task_id: str) -> None:
    """Re-queue a failed task under the same id."""
    try:
        st = _ctx().service.retry(task_id)
    except DigitalPeopleError as ex:
        raise click.ClickException(str(ex)) from ex
    click.echo(json.dumps({"task_id": st.task_id, "retry_count": st.retry_count}, ensure_ascii=False))


@cli.command("archive")
@click.argument("task_ids", nargs=-1, required=True)
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), required=True)
def archive(task_ids: tuple[str, ...], out_path: Path) -> None:
    """Zip the result videos of completed tasks."""
    app = _ctx()
    statuses: list[TaskStatus] = []
    missing: list[str] = []
    for tid in task_ids:
        st = app.cache.get(tid)
        if st is None:
            missing.append(tid)
        else:
            statuses.append(st)
    report = archive_results(statuses, out_path)
    for tid in missing:
        report.skipped[tid] = "unknown task"
    if not report.added:
        raise click.ClickException(f"nothing archived: {report.skipped}")
    click.echo(json.dumps({"archive": str(report.path), "added": report.added, "skipped": report.skipped}, ensure_ascii=False))


@cli.command("metrics")
def metrics_cmd() -> None:
    """Print this process's Prometheus metrics."""
    from digital_people.ops.metrics import render_metrics

    sys.stdout.write(render_metrics())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
