"""
Strukturiertes Logging Setup für Consult Scribe
"""

import logging
import structlog
from datetime import datetime, timezone
from consult_scribe.config import settings, Environment


def setup_logging():
    """Konfiguriert strukturiertes Logging"""

    # Timestamper für konsistente Zeitstempel
    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    # Processor-Chain definieren
    processors = [
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == Environment.DEVELOPMENT:
        # Development: Colored console output
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True)
        ])
    else:
        # Production: JSON output
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """Erstellt einen konfigurierten Logger"""
    return structlog.get_logger(name or __name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLogger:
    """Spezieller Logger für Audit-Events.

    Transcript text and patient names never go into audit records, only ids
    and sizes.
    """

    def __init__(self):
        self.logger = get_logger("audit")
        self.enabled = settings.audit_log_enabled

    def log_api_request(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        user_id: str = None,
        status_code: int = None,
        **kwargs
    ):
        """Loggt API-Anfragen für Audit-Zwecke"""
        if not self.enabled:
            return
        self.logger.info(
            "api_request",
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            user_id=user_id,
            status_code=status_code,
            timestamp=_now(),
            **kwargs
        )

    def log_consultation_event(
        self,
        event: str,
        consultation_id: str,
        user_id: str,
        **kwargs
    ):
        """Loggt Zustandsänderungen einer Konsultation"""
        if not self.enabled:
            return
        self.logger.info(
            "consultation_event",
            action=event,
            consultation_id=consultation_id,
            user_id=user_id,
            timestamp=_now(),
            **kwargs
        )

    def log_audio_processing(
        self,
        consultation_id: str,
        recording_id: str,
        audio_duration: float,
        audio_size_bytes: int,
        mime_type: str,
        **kwargs
    ):
        """Loggt Audio-Verarbeitungsevents"""
        if not self.enabled:
            return
        self.logger.info(
            "audio_processing",
            consultation_id=consultation_id,
            recording_id=recording_id,
            audio_duration=audio_duration,
            audio_size_bytes=audio_size_bytes,
            mime_type=mime_type,
            timestamp=_now(),
            **kwargs
        )

    def log_external_api_call(
        self,
        service: str,
        endpoint: str,
        response_status: int,
        response_time_ms: int,
        **kwargs
    ):
        """Loggt Calls zu externen APIs"""
        if not self.enabled:
            return
        self.logger.info(
            "external_api_call",
            service=service,
            endpoint=endpoint,
            response_status=response_status,
            response_time_ms=response_time_ms,
            timestamp=_now(),
            **kwargs
        )

    def log_error(
        self,
        request_id: str,
        error_type: str,
        error_message: str,
        **kwargs
    ):
        """Loggt Fehler-Events"""
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            timestamp=_now(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger()
