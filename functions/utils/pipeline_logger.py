"""Pipeline Logger for Domux.

Prints highly visible banners for finalization runs next to
the structured structlog events, so a run stands out in emulator output.
"""

import structlog
from typing import List, Optional
from datetime import datetime, timezone

logger = structlog.get_logger()


def configure_logging(level: int) -> None:
    """Drop structlog events below `level` (a stdlib logging level number)."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level)
    )


# Visual markers for different log types
BANNER_WIDTH = 80
PIPELINE_BANNER_CHAR = "█"
STAGE_BANNER_CHAR = "─"


def _create_banner(char: str, text: str, width: int = BANNER_WIDTH) -> str:
    """Create a centered banner with given character."""
    text_with_spaces = f" {text} "
    padding = (width - len(text_with_spaces)) // 2
    return char * padding + text_with_spaces + char * (width - padding - len(text_with_spaces))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_pipeline_start(pipeline: str, session_id: str, user_id: Optional[str] = None) -> None:
    """Log pipeline start with prominent banner."""
    print("\n")
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print(_create_banner(PIPELINE_BANNER_CHAR, f"DOMUX {pipeline.upper()} STARTED"))
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print(f"║ Session ID : {session_id}")
    print(f"║ User ID    : {user_id or '-'}")
    print(f"║ Timestamp  : {_now()}")
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print("\n")

    logger.info("pipeline_start_logged", pipeline=pipeline, session_id=session_id, user_id=user_id)


def log_stage(pipeline: str, session_id: str, stage: str) -> None:
    """One line per stage transition."""
    print(_create_banner(STAGE_BANNER_CHAR, f"{pipeline}: {stage}"))
    logger.info("pipeline_stage", pipeline=pipeline, session_id=session_id, stage=stage)


def log_pipeline_complete(
    pipeline: str,
    session_id: str,
    duration_ms: int,
    completed_stages: List[str],
    project_id: Optional[str] = None
) -> None:
    """Log pipeline completion with summary."""
    print("\n")
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print(_create_banner(PIPELINE_BANNER_CHAR, f"✓ {pipeline.upper()} COMPLETED"))
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print(f"║ Session ID       : {session_id}")
    if project_id:
        print(f"║ Project ID       : {project_id}")
    print(f"║ Timestamp        : {_now()}")
    print(f"║ Duration         : {duration_ms:,} ms ({duration_ms / 1000:.2f}s)")
    print(f"║ Completed Stages : {', '.join(completed_stages)}")
    print(PIPELINE_BANNER_CHAR * BANNER_WIDTH)
    print("\n")

    logger.info(
        "pipeline_complete_logged",
        pipeline=pipeline,
        session_id=session_id,
        project_id=project_id,
        duration_ms=duration_ms
    )


def log_pipeline_failed(
    pipeline: str,
    session_id: str,
    failed_stage: str,
    error: str,
    completed_stages: List[str]
) -> None:
    """Log pipeline failure with details."""
    print("\n")
    print("!" * BANNER_WIDTH)
    print(_create_banner("!", f"✗ {pipeline.upper()} FAILED"))
    print("!" * BANNER_WIDTH)
    print(f"║ Session ID       : {session_id}")
    print(f"║ Timestamp        : {_now()}")
    print(f"║ Failed Stage     : {failed_stage}")
    print(f"║ Completed Stages : {', '.join(completed_stages) or 'none'}")
    print(f"║ Error            : {error}")
    print("!" * BANNER_WIDTH)
    print("\n")

    logger.error(
        "pipeline_failed_logged",
        pipeline=pipeline,
        session_id=session_id,
        failed_stage=failed_stage,
        error=error
    )
