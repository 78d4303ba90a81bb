"""
Journal API routes (ciphertext only).

- POST   /v1/journal/entries
- GET    /v1/journal/entries
- DELETE /v1/journal/entries/{entry_id}
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ryvynn.api.deps import current_user, get_journal_service
from ryvynn.features.journal.service import JournalService


router = APIRouter(prefix="/v1/journal", tags=["journal"])


class CreateEntryRequest(BaseModel):
    ciphertext: str
    iv: str
    tags: List[str] = []


@router.post("/entries", status_code=201)
def create_entry(
    request: CreateEntryRequest,
    user_id: str = Depends(current_user),
    journal: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    entry = journal.create_entry(user_id, request.ciphertext, request.iv, request.tags)
    return {"success": True, "data": entry.model_dump(mode="json")}


@router.get("/entries")
def list_entries(
    user_id: str = Depends(current_user),
    journal: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    return {"entries": [entry.model_dump(mode="json") for entry in journal.list_entries(user_id)]}


@router.delete("/entries/{entry_id}")
def delete_entry(
    entry_id: str,
    user_id: str = Depends(current_user),
    journal: JournalService = Depends(get_journal_service),
) -> Dict[str, Any]:
    journal.delete_entry(user_id, entry_id)
    return {"success": True}
