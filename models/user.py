# models/user.py
from pydantic import BaseModel

class User(BaseModel):
    id: str
    name: str | None = None
    email: str
    phone: str | None = None
