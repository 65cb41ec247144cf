"""Demo entrypoint wiring together pipeline components.

This module intentionally contains a small, end-to-end "smoke test" that:

- Loads configuration from environment.
- Instantiates a simulated source (slow API poll) and destination (slow DB write).
- Starts the pipeline controller with a DuckDB-backed observability recorder.
- Prints events and status until the source is exhausted or a time limit expires.

It is **not** intended to be production orchestration logic; it is a convenient
manual integration harness for the batching loop.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from config import _get_env_number, load_config
from observability import DuckDBObservabilitySink, ObservabilityRecorder
from pipeline.adapters.simulated import SimulatedDestination, SimulatedSource
from pipeline.bus import PipelineEventBus
from pipeline.controller import PipelineController
from pipeline.errors import PipelineFatal


async def _log_events(event_bus: PipelineEventBus) -> None:
    """Continuously print events observed on the given event bus."""
    q = event_bus.subscribe()
    while True:
        event = await q.get()
        print(f"[event] {event.type}: {event}")


async def _print_status(controller: PipelineController, interval_s: float) -> None:
    """Periodically print the controller's status, as a dashboard would poll it."""
    while True:
        await asyncio.sleep(interval_s)
        s = controller.status()
        print(f"[status] state={s.state} buffered={s.buffered} delivered={s.delivered} failed={s.failed}")


async def run_demo() -> None:
    """Run the simulated pipeline until exhaustion or `DEMO_DURATION_S` elapses."""
    cfg = load_config()
    # DEMO_RECORD_LIMIT=0 runs until the time limit.
    record_limit = _get_env_number("DEMO_RECORD_LIMIT", 50, int)
    duration_s = _get_env_number("DEMO_DURATION_S", 60.0, float)

    repo_root = Path(__file__).resolve().parent.parent
    db_path = Path(cfg.observability.db_path)
    if not db_path.is_absolute():
        db_path = repo_root / db_path
    recorder = ObservabilityRecorder(
        sink=DuckDBObservabilitySink(path=db_path),
        max_queue_size=cfg.observability.max_queue_size,
    )
    event_bus = PipelineEventBus(recorder=recorder)

    source = SimulatedSource(delay_s=1.0, records_per_fetch=2, limit=record_limit or None)
    destination = SimulatedDestination(delay_s=0.5, echo=True)

    controller = PipelineController(
        source=source,
        destination=destination,
        config=cfg.pipeline,
        event_bus=event_bus,
    )

    log_task = asyncio.create_task(_log_events(event_bus), name="event-logger")
    status_task = asyncio.create_task(_print_status(controller, 5.0), name="status-printer")
    try:
        controller.start()
        try:
            await asyncio.wait_for(controller.wait(), timeout=duration_s)
        except TimeoutError:
            print(f"Demo time limit ({duration_s}s) reached, stopping pipeline")
            await controller.shutdown()
        except PipelineFatal as exc:
            print(f"Pipeline failed: {exc}")

        final = controller.status()
        print(
            f"Final status: state={final.state} reason={final.stop_reason} "
            f"delivered={final.delivered} failed={final.failed} dropped={final.dropped} "
            f"pending={final.buffered}"
        )
    finally:
        for t in [log_task, status_task]:
            t.cancel()
        await asyncio.gather(log_task, status_task, return_exceptions=True)
        await recorder.aclose()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py` / `pipeline-demo`."""
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
