import logging
from pydantic import BaseModel
from typing import Optional, Any

from orbitour.utils.logging_setup import configure_logging


class ApiResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    content: Optional[Any] = None

    class Config:
        extra = "allow"


def setup_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
