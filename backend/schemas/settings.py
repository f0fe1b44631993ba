# backend/schemas/settings.py
from typing import List, Optional
from pydantic import BaseModel

class SettingOut(BaseModel):
    key: str
    value: Optional[str] = None

class SettingList(BaseModel):
    ok: bool = True
    data: List[SettingOut]
