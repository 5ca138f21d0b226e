"""
Local store for documents created in Tebra.

Tebra's SOAP contract can create and delete documents but cannot read them
back, so every document we create is recorded here with its content.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, or_, cast, String
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tebra_document import TebraDocument

logger = logging.getLogger(__name__)


def approx_decoded_size(file_content_base64: Optional[str]) -> int:
    if not file_content_base64:
        return 0
    return (len(file_content_base64) * 3) // 4


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally (escape char ``\\``)."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def store_document(
    db: AsyncSession,
    *,
    tebra_document_id: Optional[str],
    patient_id: str,
    name: str,
    file_name: str,
    practice_id: Optional[str] = None,
    label: Optional[str] = None,
    status: str = "Completed",
    document_date: Optional[datetime] = None,
    document_notes: Optional[str] = None,
    file_content_base64: Optional[str] = None,
    mime_type: str = "application/json",
) -> TebraDocument:
    doc = TebraDocument(
        tebra_document_id=tebra_document_id,
        patient_id=str(patient_id),
        practice_id=str(practice_id) if practice_id else None,
        name=name,
        file_name=file_name,
        label=label or None,
        status=status,
        document_date=document_date or datetime.now(timezone.utc),
        document_notes=document_notes or None,
        file_content_base64=file_content_base64 or None,
        file_size_bytes=approx_decoded_size(file_content_base64),
        mime_type=mime_type,
    )
    db.add(doc)
    await db.flush()
    await db.refresh(doc)
    return doc


async def get_documents_for_patient(
    db: AsyncSession,
    patient_id: str,
    label: Optional[str] = None,
    name: Optional[str] = None,
) -> list[TebraDocument]:
    """Non-deleted documents for a patient, newest first.

    ``label`` matches exactly; ``name`` is a case-insensitive substring.
    """
    stmt = select(TebraDocument).where(
        TebraDocument.patient_id == str(patient_id),
        TebraDocument.deleted_at.is_(None),
    )
    if label:
        stmt = stmt.where(TebraDocument.label == label)
    if name:
        stmt = stmt.where(TebraDocument.name.ilike(f"%{escape_like(name)}%", escape="\\"))
    stmt = stmt.order_by(TebraDocument.document_date.desc(), TebraDocument.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_document(db: AsyncSession, document_id: str) -> Optional[TebraDocument]:
    """Look up by Tebra document id or local id."""
    stmt = (
        select(TebraDocument)
        .where(
            or_(
                TebraDocument.tebra_document_id == str(document_id),
                cast(TebraDocument.id, String) == str(document_id),
            ),
            TebraDocument.deleted_at.is_(None),
        )
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def soft_delete_document(db: AsyncSession, document_id: str) -> bool:
    doc = await get_document(db, document_id)
    if doc is None:
        return False
    doc.deleted_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Soft-deleted local document %s (patient=%s)", doc.id, doc.patient_id)
    return True
