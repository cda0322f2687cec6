from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field, field_validator
import logging

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthUser, AuthSession

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger("passlib").setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)



class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	id: str
	name: Optional[str] = None
	email: Optional[str] = None
	role: str = "student"


def is_admin(user: Optional[User]) -> bool:
	"""Admin if the user carries the admin role.

	While NESA_ADMIN_IDENTITY_MATCH is on, the legacy rule also applies: the
	display name, or the local part of the e-mail address, equals
	NESA_ADMIN_IDENTITY (case-insensitive).
	"""
	if user is None:
		return False
	if user.role == "admin":
		return True
	if not settings.admin_identity_match:
		return False
	identity = settings.admin_identity.strip().casefold()
	if not identity:
		return False
	name = (user.name or "").strip().casefold()
	local_part = (user.email or "").split("@", 1)[0].strip().casefold()
	return identity in (name, local_part)


def _bcrypt_secret(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	return password.encode("utf-8")[:72].decode("utf-8", errors="ignore")


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_secret(plain_password), hashed_password)


def _to_user(row: AuthUser) -> User:
	return User(id=row.username, name=row.name, email=row.email, role=row.role or "student")


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	user_row = db.query(AuthUser).filter(AuthUser.username == username).first()
	if user_row and verify_password(password, user_row.password_hash):
		return _to_user(user_row)
	return None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	if expires_delta is None:
		minutes = settings.access_token_expire_minutes
		expires_delta = timedelta(minutes=minutes) if minutes and minutes > 0 else timedelta(days=30)
	claims = {**data, "exp": datetime.now(timezone.utc) + expires_delta}
	return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	# Each token is bound to a server-side session row (jti) so it can be revoked
	session_id = uuid.uuid4().hex
	access_token = create_access_token({"sub": user.id, "jti": session_id})
	try:
		db.merge(AuthSession(session_id=session_id, username=user.id))
		db.commit()
	except Exception:
		db.rollback()
		raise
	return Token(access_token=access_token)


def _user_from_token(token: str, db: Session) -> User:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		username: str | None = payload.get("sub")
		jti: str | None = payload.get("jti")
		if username is None or jti is None:
			raise credentials_exception
	except JWTError:
		raise credentials_exception
	# The session row must still exist; deleting it revokes the token
	try:
		row = db.get(AuthSession, jti)
		if not row or row.username != username:
			raise credentials_exception
		user_row = db.get(AuthUser, username)
		if user_row is None:
			raise credentials_exception
		row.last_activity_at = datetime.utcnow()
		db.add(row)
		db.commit()
	except HTTPException:
		raise
	except Exception:
		# On DB errors, fail closed
		raise credentials_exception
	return _to_user(user_row)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	return _user_from_token(token, db)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)) -> Optional[User]:
	if not token:
		return None
	return _user_from_token(token, db)


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


class RegisterRequest(BaseModel):
	username: str = Field(min_length=3, max_length=128)
	password: str = Field(min_length=1)
	email: str
	name: Optional[str] = None

	@field_validator("username", "email")
	@classmethod
	def _required(cls, value: str) -> str:
		value = value.strip()
		if not value:
			raise ValueError("must not be blank")
		return value


@router.post("/register", status_code=201, response_model=User)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	if db.get(AuthUser, req.username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	row = AuthUser(
		username=req.username,
		password_hash=pwd_context.hash(_bcrypt_secret(req.password)),
		email=req.email,
		name=(req.name or "").strip() or None,
	)
	try:
		db.add(row)
		db.commit()
	except Exception:
		db.rollback()
		raise
	logger.info("[auth] registered %s", row.username)
	return _to_user(row)
