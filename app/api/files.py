from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from typing import Optional

from app.database import session_scope
from app.exceptions import InputError, NotFoundError
from app.models import StoredFile
from app.schemas.files import StoredFileResponse
from app.services.ingestion import IngestionService
from app.services.storage import soft_delete_file

router = APIRouter()


def get_ingestion_service() -> IngestionService:
    from app.services.ocr import get_ocr_service

    return IngestionService(ocr_service=get_ocr_service())


@router.post("/upload", response_model=StoredFileResponse, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    kind: Optional[str] = Form(None),
    reference_id: Optional[int] = Form(None),
    service: IngestionService = Depends(get_ingestion_service),
):
    content = await file.read()
    try:
        stored = await service.ingest_upload(
            content,
            file.filename or "upload",
            file.content_type or "",
            kind=kind,
            reference_id=reference_id,
        )
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StoredFileResponse.model_validate(stored)


@router.get("/{file_id}", response_model=StoredFileResponse)
def get_file(file_id: str):
    with session_scope() as session:
        stored = session.get(StoredFile, file_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="File not found")
        return StoredFileResponse.model_validate(stored)


@router.delete("/{file_id}", response_model=StoredFileResponse)
def delete_file(file_id: str):
    try:
        with session_scope() as session:
            return StoredFileResponse.model_validate(soft_delete_file(session, file_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
