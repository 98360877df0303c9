from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from src.api.dependencies import require_staff
from src.core.database import get_db
from src.models.schemas import NotificationSummary
from src.services.account_service import Caller
from src.services.notification_service import NotificationService

router = APIRouter()

@router.get("/", response_model=NotificationSummary)
async def get_notifications(db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    """Pending approvals and stock alerts for the staff dropdown"""
    return NotificationService(db).summary()
