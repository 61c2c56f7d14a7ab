from enum import Enum
from pydantic import BaseModel


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class CurrentUser(BaseModel):
    id: str
    role: UserRole

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.TEACHER, UserRole.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
