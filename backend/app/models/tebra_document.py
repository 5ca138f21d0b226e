from sqlalchemy import Column, Index, String, Integer, Text, DateTime
from sqlalchemy.sql import func

from app.database import Base


class TebraDocument(Base):
    """Local copy of documents created in Tebra.

    The SOAP contract has no document read operation, so metadata and
    content are kept here at creation time.
    """

    __tablename__ = "tebra_documents"
    __table_args__ = (
        Index("ix_tebra_documents_patient", "patient_id", "deleted_at"),
        Index("ix_tebra_documents_tebra_id", "tebra_document_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tebra_document_id = Column(String(64), nullable=True)
    patient_id = Column(String(64), nullable=False)
    practice_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False)
    file_name = Column(String(255), nullable=False)
    label = Column(String(100), nullable=True)
    status = Column(String(50), default="Completed", nullable=False)
    document_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    document_notes = Column(Text, nullable=True)
    file_content_base64 = Column(Text, nullable=True)
    file_size_bytes = Column(Integer, default=0, nullable=False)
    mime_type = Column(String(100), default="application/json", nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self, include_content: bool = False) -> dict:
        data = {
            "id": self.id,
            "tebra_document_id": self.tebra_document_id,
            "patient_id": self.patient_id,
            "practice_id": self.practice_id,
            "name": self.name,
            "file_name": self.file_name,
            "label": self.label,
            "status": self.status,
            "document_date": self.document_date.isoformat() if self.document_date else None,
            "document_notes": self.document_notes,
            "file_size_bytes": self.file_size_bytes,
            "mime_type": self.mime_type,
        }
        if include_content:
            data["file_content_base64"] = self.file_content_base64
        return data

    def __repr__(self):
        return f"<TebraDocument(id={self.id}, patient_id='{self.patient_id}', name='{self.name}')>"
