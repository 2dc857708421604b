import jwt
from fastapi import BackgroundTasks, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from backend.auth import jwt_handler
from backend.database import get_db
from backend.models.user import Actor, Role, User
from backend.services.notifications import BackgroundEventPublisher, EventPublisher

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    try:
        payload = jwt_handler.decode_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = (payload.get("sub") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")

    # Tokens issued before a role change must be refreshed.
    claimed_role = payload.get("role")
    if claimed_role and claimed_role != user.role:
        raise HTTPException(status_code=401, detail="Token role is out of date")
    return user


def get_current_actor(user: User = Depends(get_current_user)) -> Actor:
    try:
        role = Role(user.role)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail="Unknown user role") from exc
    return Actor(user_id=user.id, role=role)


def get_event_publisher(background_tasks: BackgroundTasks) -> EventPublisher:
    return BackgroundEventPublisher(background_tasks)
