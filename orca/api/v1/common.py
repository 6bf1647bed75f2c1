from typing import Generic, List, Optional, TypeVar, Dict, Any
from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class ORMModel(BaseModel):
    """Response base reading attributes off SQLAlchemy rows"""
    model_config = ConfigDict(from_attributes=True)


class Page(BaseModel, Generic[T]):
    """Standard list envelope"""
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int
    stats: Optional[Dict[str, Any]] = None


class SuccessResponse(BaseModel):
    success: bool = True
    message: str
