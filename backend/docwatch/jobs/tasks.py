import structlog

from docwatch.tracking.analysis import AnalysisRequest

log = structlog.get_logger()


async def analyze_change(ctx: dict, request: dict) -> dict | None:
    analysis = AnalysisRequest.model_validate(request)
    diff = await ctx["pipeline"].analyze(analysis)
    log.info(
        "change_analysis_finished",
        document_id=analysis.event.document_id,
        event_id=str(analysis.event.id),
        summary=diff.summary if diff else None,
    )
    return diff.model_dump() if diff else None


async def prune_snapshots(ctx: dict) -> int:
    removed = await ctx["pipeline"].snapshot_store.prune_expired()
    if removed:
        log.info("expired_snapshots_removed", count=removed)
    return removed
