from fastapi import Depends, HTTPException, status

from ..core.exceptions import NotAuthenticatedError
from ..core.security import oauth2_scheme, verify_token
from ..schemas.user import CurrentUser, UserRole


def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    try:
        return verify_token(token)
    except NotAuthenticatedError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_student(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current_user.role != UserRole.STUDENT:
        raise HTTPException(status_code=403, detail="Student access required")
    return current_user


def require_staff(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_staff:
        raise HTTPException(
            status_code=403, detail="The user doesn't have enough privileges"
        )
    return current_user
