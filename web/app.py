from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from ofx_statement_parser import Amount, ParseError, parse_statement, statement_to_json

log = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent
REPO_ROOT = APP_DIR.parent
CONFIG_PATH = APP_DIR / "config.json"
ALLOWED_SUFFIXES = (".ofx", ".qfx")


class Base(DeclarativeBase):
    pass


class Statement(Base):
    __tablename__ = "statements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    bank_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    period_end: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    generated_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    statement_id: Mapped[int] = mapped_column(ForeignKey("statements.id"), index=True, nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    fit_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    posted_date: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    user_date: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    memo: Mapped[str] = mapped_column(Text, nullable=False)


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str


class LoginRequest(BaseModel):
    token: str


def load_config(path: Path = CONFIG_PATH) -> dict:
    if not path.exists():
        raise RuntimeError(f"Missing config file: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        if role not in {"admin", "user"}:
            raise RuntimeError(f"unsupported role: {role}")
        users[token] = User(username=str(raw.get("username", "unknown")), token=token, role=role)
    return users


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin permission required")


def parse_iso_date_or_400(raw: str, field_name: str) -> str:
    value = (raw or "").strip()
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {field_name}, expected YYYY-MM-DD")
    return parsed.isoformat()


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def statement_summary(st: Statement) -> dict:
    return {
        "id": st.id,
        "original_filename": st.original_filename,
        "account_number": st.account_number,
        "bank_id": st.bank_id,
        "currency": st.currency,
        "period_start": st.period_start,
        "period_end": st.period_end,
        "generated_at": st.generated_at,
        "uploaded_at": st.uploaded_at.isoformat(),
        "uploaded_by": st.uploaded_by,
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    if cfg is None:
        cfg = load_config()

    db_path = resolve_path(cfg.get("database", {}).get("sqlite_path", "web/data/app.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    upload_dir = resolve_path(cfg.get("storage", {}).get("upload_dir", "web/data/uploads"))
    upload_dir.mkdir(parents=True, exist_ok=True)

    parser_cfg = cfg.get("parser", {})
    encoding = str(parser_cfg.get("encoding", "utf-8"))
    exact_amounts = bool(parser_cfg.get("exact_amounts", False))

    engine = create_engine(f"sqlite+pysqlite:///{db_path}", future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)

    app = FastAPI(title="OFX Statement API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    bearer = HTTPBearer(auto_error=False)

    def get_db() -> Session:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(bearer),
    ) -> User:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="missing bearer token")
        user = user_index.get(credentials.credentials.strip())
        if user is None:
            raise HTTPException(status_code=401, detail="invalid token")
        return user

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        user = user_index.get(payload.token.strip())
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {"username": user.username, "role": user.role, "token": user.token}

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {"username": user.username, "role": user.role}

    @app.post("/api/statements/upload")
    async def upload_statement(
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        filename = file.filename or ""
        if not filename.lower().endswith(ALLOWED_SUFFIXES):
            raise HTTPException(status_code=400, detail="only OFX/QFX is supported")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        stored_path = upload_dir / f"{stamp}_{os.path.basename(filename)}"

        with stored_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                out.write(chunk)

        try:
            with stored_path.open("rb") as fh:
                record = parse_statement(fh, encoding=encoding, exact_amounts=exact_amounts)
        except ParseError as e:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")

        parsed = statement_to_json(record)

        existing = db.scalars(
            select(Statement).where(
                Statement.account_number == parsed["account_number"],
                Statement.period_start == parsed["period_start"],
                Statement.period_end == parsed["period_end"],
                Statement.generated_at == parsed["generated_at"],
            )
        ).first()
        if existing is not None:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "duplicate statement detected",
                    "existing_statement_id": existing.id,
                    "account_number": existing.account_number,
                    "period_start": existing.period_start,
                    "period_end": existing.period_end,
                },
            )

        st = Statement(
            original_filename=filename,
            stored_path=str(stored_path),
            account_number=parsed["account_number"],
            bank_id=parsed["bank_id"],
            currency=parsed["currency"],
            period_start=parsed["period_start"],
            period_end=parsed["period_end"],
            generated_at=parsed["generated_at"],
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=user.username,
            parsed_json=json.dumps(parsed, ensure_ascii=False),
        )
        db.add(st)
        db.flush()

        for tx in record.transactions:
            db.add(
                Transaction(
                    statement_id=st.id,
                    account_number=st.account_number,
                    fit_id=tx.fit_id,
                    type=tx.type,
                    posted_date=tx.posted_date.isoformat() if tx.posted_date else None,
                    user_date=tx.user_date.isoformat() if tx.user_date else None,
                    amount_cents=tx.amount.cents,
                    memo=tx.memo,
                )
            )
        db.commit()
        log.info(
            "Stored statement %d for account %s (%d transactions)",
            st.id,
            st.account_number,
            len(record.transactions),
        )

        return {
            "statement_id": st.id,
            "account_number": st.account_number,
            "period_start": st.period_start,
            "period_end": st.period_end,
            "transactions_count": len(record.transactions),
        }

    @app.get("/api/statements")
    def list_statements(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        rows = db.scalars(
            select(Statement).order_by(Statement.id.desc()).offset(offset).limit(limit + 1)
        ).all()
        has_more = len(rows) > limit
        items = [statement_summary(st) for st in rows[:limit]]
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": len(items),
            "has_more": has_more,
        }

    @app.get("/api/statements/{statement_id}")
    def get_statement(
        statement_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        st = db.get(Statement, statement_id)
        if not st:
            raise HTTPException(status_code=404, detail="statement not found")
        out = statement_summary(st)
        out["parsed"] = json.loads(st.parsed_json)
        return out

    @app.get("/api/statements/{statement_id}/file")
    def get_statement_file(
        statement_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> FileResponse:
        st = db.get(Statement, statement_id)
        if not st:
            raise HTTPException(status_code=404, detail="statement not found")
        path = Path(st.stored_path)
        if not path.exists():
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(
            path=str(path), filename=st.original_filename, media_type="application/x-ofx"
        )

    @app.get("/api/transactions")
    def list_transactions(
        statement_id: Optional[int] = Query(default=None),
        account_number: Optional[str] = Query(default=None),
        type: Optional[str] = Query(default=None),
        posted_from: Optional[str] = Query(default=None),
        posted_to: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(Transaction).order_by(Transaction.id)

        date_from: Optional[str] = None
        date_to: Optional[str] = None
        if posted_from:
            date_from = parse_iso_date_or_400(posted_from, "posted_from")
        if posted_to:
            date_to = parse_iso_date_or_400(posted_to, "posted_to")
        if date_from and date_to and date_from > date_to:
            raise HTTPException(status_code=400, detail="posted_from must be <= posted_to")

        if statement_id is not None:
            stmt = stmt.where(Transaction.statement_id == statement_id)
        if account_number:
            stmt = stmt.where(Transaction.account_number == account_number)
        if type:
            stmt = stmt.where(Transaction.type == type.upper())
        if date_from:
            stmt = stmt.where(Transaction.posted_date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.posted_date <= date_to)
        if q:
            stmt = stmt.where(Transaction.memo.ilike(f"%{q}%"))

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        out: List[dict] = [
            {
                "id": tx.id,
                "statement_id": tx.statement_id,
                "account_number": tx.account_number,
                "fit_id": tx.fit_id,
                "type": tx.type,
                "posted_date": tx.posted_date,
                "user_date": tx.user_date,
                "amount": str(Amount(tx.amount_cents)),
                "memo": tx.memo,
            }
            for tx in rows[:limit]
        ]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    return app
