from ..core.exceptions import NotAuthenticatedError
from ..core.security import verify_token
from ..schemas.user import UserRole


class TokenIdentityProvider:
    """
    Resolves the student behind a session from its bearer token.

    The token is validated again on every call, so a token that expired
    during a long exam makes the submission fail instead of being stored
    under a stale identity.
    """

    def __init__(self, token: str):
        self.token = token

    async def current_student_id(self) -> str:
        user = verify_token(self.token)
        if user.role != UserRole.STUDENT:
            raise NotAuthenticatedError("Only students can submit exam attempts")
        return user.id
