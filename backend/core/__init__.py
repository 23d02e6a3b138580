# Core module exports
from core.config import Settings, EngineConfig, get_settings
from core.logging import (
    configure_logging,
    get_logger,
    bind_context,
    clear_context,
    generate_correlation_id,
    api_logger,
    engine_logger,
    pipeline_logger,
    mastery_logger,
    calibration_logger,
    db_logger,
)
