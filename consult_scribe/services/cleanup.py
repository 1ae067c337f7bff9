"""
Cleanup of expired audio recordings.

Recordings are time-boxed independently of their consultation. The job
deletes every metadata row past its expiry in a single statement, so running
it twice, or twice at once, leaves the same result.

Run once from the command line with ``python -m consult_scribe.services.cleanup``.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from consult_scribe.core.logging import get_logger, setup_logging
from consult_scribe.db.tables import AudioRecording
from consult_scribe.services.audio_processor import AudioProcessor

logger = get_logger(__name__)


def cleanup_expired_recordings(
    session: Session,
    now: Optional[datetime] = None,
    audio_processor: Optional[AudioProcessor] = None,
) -> None:
    now = now or datetime.now(timezone.utc)
    expired = AudioRecording.expires_at < now

    paths = [path for path in session.scalars(select(AudioRecording.file_path).where(expired)) if path]
    result = session.execute(
        delete(AudioRecording).where(expired).execution_options(synchronize_session=False)
    )
    session.commit()

    if audio_processor is not None:
        for path in paths:
            audio_processor.delete(path)

    if result.rowcount:
        logger.info(f"Deleted {result.rowcount} expired audio recordings")


def main() -> None:
    from consult_scribe.db.database import SessionLocal, init_db

    setup_logging()
    init_db()
    with SessionLocal() as session:
        cleanup_expired_recordings(session, audio_processor=AudioProcessor())


if __name__ == "__main__":
    main()
