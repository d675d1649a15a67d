from __future__ import annotations
from pydantic import BaseModel


class SimLevelRequest(BaseModel):
    level: bool
