from sqlalchemy.orm import Session
from passlib.context import CryptContext
from .database import User
from .errors import Conflict, NotFound

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def get_password_hash(password): return pwd_context.hash(password)

def verify_password(plain, hashed): return pwd_context.verify(plain, hashed)

def get_user(db: Session, user_id: int):
    return db.query(User).filter(User.id == user_id).first()

def create_user(db: Session, username: str, email: str, password: str, referrer_id=None, is_admin=False):
    if db.query(User).filter((User.username == username) | (User.email == email)).first():
        raise Conflict("Username or email already registered")
    if referrer_id is not None and get_user(db, referrer_id) is None:
        raise NotFound(f"Referrer {referrer_id} not found")
    user = User(username=username, email=email, password=get_password_hash(password),
                referrer_id=referrer_id, is_admin=is_admin)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
