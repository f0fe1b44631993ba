# backend/schemas/common.py
from typing import Union
from pydantic import BaseModel

# Numbers arrive from the browser as JSON numbers or strings; the ledger validates them
Number = Union[int, float, str]

# Plain acknowledgement for writes that return nothing
class OkResponse(BaseModel):
    ok: bool = True
