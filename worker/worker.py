import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from common import config
from common.job_schema import BytesSource, ConversionRequest, InlineResult, Job, JobStatus, TargetFormat
from worker.collaborators import ConversionClient, ConversionError, StagingError
from worker.job_queue import ConversionQueue

logger = logging.getLogger(__name__)


async def prepare_requests(client: ConversionClient, paths: Sequence[Path],
                           target_format: TargetFormat, quality: int
                           ) -> Tuple[List[ConversionRequest], int]:
    """
    Reads each file; files above LARGE_FILE_THRESHOLD are staged first.
    Returns (requests, number of files that could not be staged).
    """
    requests, failures = [], 0
    for path in paths:
        data = path.read_bytes()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        if len(data) > config.LARGE_FILE_THRESHOLD:
            try:
                source = await client.stage_file(path.name, content_type, data)
            except StagingError as e:
                logger.error(f"Staging failed for {path}: {e}")
                failures += 1
                continue
        else:
            source = BytesSource(filename=path.name, content_type=content_type, data=data)
        requests.append(ConversionRequest(source=source, target_format=target_format, quality=quality))
    return requests, failures


def output_name(job: Job, taken: Set[str]) -> str:
    """<stem>.<ext>, or <stem>-N.<ext> when another file in this run already has that name."""
    stem, ext = Path(job.source.filename).stem, job.target_format.extension
    name, n = f"{stem}.{ext}", 0
    while name in taken:
        n += 1
        name = f"{stem}-{n}.{ext}"
    taken.add(name)
    return name


async def save_result(client: ConversionClient, job: Job, output_dir: Path, taken: Set[str]) -> Path:
    if isinstance(job.result, InlineResult):
        data = job.result.data
    else:
        data = await client.download(job.result.url)
    dest = output_dir / output_name(job, taken)
    dest.write_bytes(data)
    return dest


async def run(paths: Sequence[Path], target_format: TargetFormat, quality: int,
              output_dir: Path, client: ConversionClient, local_mode: bool = False) -> int:
    """Converts every file through the queue; returns the number of failures."""
    output_dir.mkdir(parents=True, exist_ok=True)
    queue = ConversionQueue(client)
    if queue.max_pending < 1:
        raise ValueError("MAX_PENDING must be at least 1")

    requests, failures = await prepare_requests(client, paths, target_format, quality)
    taken: Set[str] = set()

    while requests:
        batch, requests = requests[:queue.max_pending], requests[queue.max_pending:]
        queue.add_jobs(batch)
        await queue.process_queue(local_mode=local_mode)

        for job in queue.jobs:
            if job.status == JobStatus.COMPLETED:
                try:
                    dest = await save_result(client, job, output_dir, taken)
                    logger.info(f"{job.source.filename} -> {dest} ({job.result.size} bytes)")
                except (ConversionError, OSError) as e:
                    logger.error(f"Could not save {job.source.filename}: {e}")
                    failures += 1
            elif job.status == JobStatus.ERROR:
                logger.error(f"{job.source.filename}: {job.error}")
                failures += 1
        queue.clear_completed()

    return failures


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert images through the CyberMorph API")
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--format", dest="target_format", default="webp",
                        type=TargetFormat.parse, help="webp, png or jpeg (default: webp)")
    parser.add_argument("--quality", type=int, default=config.DEFAULT_QUALITY)
    parser.add_argument("--api", default=config.API_BASE_URL, help="API base URL")
    parser.add_argument("--output", type=Path, default=Path("converted"))
    parser.add_argument("--local", action="store_true",
                        help="convert small files on this machine instead of calling the API")
    args = parser.parse_args(argv)
    if not 1 <= args.quality <= 100:
        parser.error("--quality must be between 1 and 100")
    return args


async def _main(args: argparse.Namespace) -> int:
    async with ConversionClient(args.api) as client:
        return await run(args.files, args.target_format, args.quality, args.output,
                         client, local_mode=args.local)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    args = parse_args(argv)
    logger.info(f"Worker started: {len(args.files)} file(s) -> {args.target_format.value}")
    failures = asyncio.run(_main(args))
    if failures:
        logger.error(f"{failures} file(s) failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
