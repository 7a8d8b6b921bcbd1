import logging
import os
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from sqlalchemy import (
    Column,
    String,
    Integer,
    Numeric,
    Date,
    Float,
    Text,
    ForeignKey,
    bindparam,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import select
from starlette.exceptions import HTTPException as StarletteHTTPException

from schemas import (
    CATEGORIA_FIELDS,
    GASTO_FIELDS,
    TIPO_EGRESO,
    TIPO_INGRESO,
    TRANSACCION_FIELDS,
    CategoriaOut,
    GastoCategoriaOut,
    LoginIn,
    MessageOut,
    ResumenOut,
    SessionOut,
    SuccessOut,
    TransaccionIn,
    TransaccionOut,
    remap_fields,
)
from sessions import DEFAULT_TTL_SECONDS, SessionStore

# ----------------------------------------------------------------------------
# Config
# ----------------------------------------------------------------------------
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./app.db"
VIEWER_ROLE = "viewer"
READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name, "").strip().lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime configuration, read once from the environment."""

    database_url: str = DEFAULT_DATABASE_URL
    database_ssl: bool = True
    create_schema: bool = False
    session_ttl_seconds: int = DEFAULT_TTL_SECONDS
    session_cookie_name: str = "sid"
    session_cookie_secure: bool = False
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
            database_ssl=_env_flag("DATABASE_SSL", True),
            create_schema=_env_flag("DB_CREATE_SCHEMA", False),
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", DEFAULT_TTL_SECONDS)),
            session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "sid"),
            session_cookie_secure=_env_flag("SESSION_COOKIE_SECURE", False),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# ----------------------------------------------------------------------------
# Logging
# ----------------------------------------------------------------------------
logger = logging.getLogger("finanzas")


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger.setLevel(level.upper())
    # create_app may run more than once per process (tests)
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    return logger


# ----------------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------------
Base = declarative_base()


class UsuarioModel(Base):
    __tablename__ = "usuarios"
    id = Column(Integer, primary_key=True)
    usuario = Column(String(50), unique=True, nullable=False)
    password = Column(String(255), nullable=False)  # bcrypt hash or legacy plaintext
    nombre = Column(String(120), nullable=True)
    rol = Column(String(20), nullable=False, server_default="admin")


class CategoriaModel(Base):
    __tablename__ = "categorias"
    id = Column(Integer, primary_key=True)
    nombre = Column(String(100), nullable=False)


class TransaccionModel(Base):
    __tablename__ = "transacciones"
    id = Column(Integer, primary_key=True)
    fecha = Column(Date, nullable=False)
    tipo = Column(String(10), nullable=False)  # Ingreso | Egreso
    categoria_id = Column(Integer, ForeignKey("categorias.id"), nullable=True)
    detalle = Column(Text, nullable=True)
    monto = Column(Numeric(12, 2), nullable=False)


def _unverified_ssl_context() -> ssl.SSLContext:
    # Managed Postgres providers present certificates we do not pin.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def normalize_database_url(raw_url: str, use_ssl: bool = True) -> Tuple[str, dict]:
    """Return an async driver URL and the connect_args it needs.

    postgres:// and postgresql:// become postgresql+asyncpg://, and libpq-only
    query options (sslmode, channel_binding) are replaced by an SSL context.
    Plain sqlite:// becomes sqlite+aiosqlite://.
    """
    url = make_url(raw_url)
    backend = url.drivername.split("+")[0]
    connect_args = {}

    if backend in ("postgres", "postgresql"):
        url = url.set(drivername="postgresql+asyncpg")
        url = url.difference_update_query(["sslmode", "channel_binding"])
        if use_ssl:
            connect_args["ssl"] = _unverified_ssl_context()
    elif url.drivername == "sqlite":
        url = url.set(drivername="sqlite+aiosqlite")

    return url.render_as_string(hide_password=False), connect_args


def build_engine(settings: Settings) -> AsyncEngine:
    url, connect_args = normalize_database_url(settings.database_url, settings.database_ssl)
    return create_async_engine(url, echo=False, connect_args=connect_args)


async def check_database(engine: AsyncEngine, create_schema: bool = False) -> bool:
    try:
        async with engine.begin() as conn:
            if create_schema:
                await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database connection failed: %s", e)
        return False
    logger.info("Connected to database (%s)", engine.url.get_backend_name())
    return True


async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.session_factory() as session:
        yield session


# ----------------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------------
class ApiError(Exception):
    status_code = 500
    message = "Error interno"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class Unauthenticated(ApiError):
    status_code = 401
    message = "No autorizado"


class Forbidden(ApiError):
    status_code = 403
    message = "Acceso denegado: Tu usuario es de solo lectura."


class InvalidCredentials(ApiError):
    status_code = 401
    message = "Usuario o contraseña incorrectos"


class StorageError(ApiError):
    status_code = 500


def error_envelope(status_code: int, message: str, headers: Optional[dict] = None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra},
        headers=headers,
    )


async def api_error_handler(request: Request, exc: ApiError):
    return error_envelope(exc.status_code, exc.message)


async def storage_error_handler(request: Request, exc: Exception):
    # asyncpg connect failures (refused, DNS, timeout) surface as bare OSError
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        message = str(exc.orig)
    else:
        message = str(exc) or exc.__class__.__name__
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, message)
    return await api_error_handler(request, StorageError(message))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return error_envelope(422, "Datos inválidos", errors=jsonable_encoder(exc.errors()))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_envelope(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


# ----------------------------------------------------------------------------
# Auth helpers
# ----------------------------------------------------------------------------
# Legacy rows store the password as-is; "plaintext" is deprecated so those
# rows show up in needs_update().
pwd_context = CryptContext(schemes=["bcrypt", "plaintext"], deprecated="auto")


def verify_password(plain_password: str, stored_password: Optional[str]) -> bool:
    if not stored_password:
        return False
    try:
        return pwd_context.verify(plain_password, stored_password)
    except ValueError as e:
        logger.error("Unreadable password hash: %s", e)
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def user_snapshot(user: UsuarioModel) -> dict:
    return {"id": user.id, "usuario": user.usuario, "nombre": user.nombre, "rol": user.rol}


async def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions


async def get_session_token(request: Request) -> Optional[str]:
    return request.cookies.get(request.app.state.settings.session_cookie_name)


async def get_session_user(
    token: Optional[str] = Depends(get_session_token),
    store: SessionStore = Depends(get_session_store),
) -> Optional[dict]:
    record = store.lookup(token)
    return record.user if record is not None else None


async def require_access(request: Request, user: Optional[dict] = Depends(get_session_user)) -> dict:
    """Gate for every protected route: a live session, and write access for writes."""
    if user is None:
        raise Unauthenticated()
    if request.method not in READ_METHODS and user.get("rol") == VIEWER_ROLE:
        raise Forbidden()
    return user


# ----------------------------------------------------------------------------
# SQL
# ----------------------------------------------------------------------------
CATEGORIAS_SQL = text(
    "SELECT id, nombre FROM categorias ORDER BY nombre"
).columns(id=Integer, nombre=String)

TRANSACCIONES_SQL = text(
    """
    SELECT t.id AS id, t.fecha AS fecha, t.tipo AS tipo, t.detalle AS detalle,
           t.monto AS monto, t.categoria_id AS categoria_id,
           c.nombre AS categoria_nombre
    FROM transacciones t
    LEFT JOIN categorias c ON t.categoria_id = c.id
    ORDER BY t.fecha DESC, t.id DESC
    """
).columns(fecha=Date, monto=Float)

INSERT_TRANSACCION_SQL = text(
    """
    INSERT INTO transacciones (fecha, tipo, categoria_id, detalle, monto)
    VALUES (:fecha, :tipo, :categoria_id, :detalle, :monto)
    """
).bindparams(bindparam("fecha", type_=Date))

UPDATE_TRANSACCION_SQL = text(
    """
    UPDATE transacciones
    SET fecha = :fecha, tipo = :tipo, categoria_id = :categoria_id,
        detalle = :detalle, monto = :monto
    WHERE id = :id
    """
).bindparams(bindparam("fecha", type_=Date))

DELETE_TRANSACCION_SQL = text("DELETE FROM transacciones WHERE id = :id")

RESUMEN_SQL = text(
    """
    SELECT
        COALESCE(SUM(CASE WHEN tipo = :ingreso THEN monto ELSE 0 END), 0) AS total_ingresos,
        COALESCE(SUM(CASE WHEN tipo = :egreso THEN monto ELSE 0 END), 0) AS total_egresos
    FROM transacciones
    """
)

GASTOS_CATEGORIA_SQL = text(
    """
    SELECT c.nombre AS categoria, SUM(t.monto) AS total
    FROM transacciones t
    JOIN categorias c ON t.categoria_id = c.id
    WHERE t.tipo = :egreso
    GROUP BY c.nombre
    """
)


def _transaccion_params(payload: TransaccionIn) -> dict:
    return {
        "fecha": payload.fecha,
        "tipo": payload.tipo,
        "categoria_id": payload.categoriaId,
        "detalle": payload.detalle,
        "monto": payload.monto,
    }


# ----------------------------------------------------------------------------
# Public routes: auth, session probe, health
# ----------------------------------------------------------------------------
public = APIRouter(prefix="/api")


@public.post("/login", response_model=SuccessOut)
async def login(
    payload: LoginIn,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(UsuarioModel).where(UsuarioModel.usuario == payload.usuario))
    user = result.scalars().first()
    if user is None or not verify_password(payload.password, user.password):
        logger.info("Failed login for %r", payload.usuario)
        raise InvalidCredentials()

    if pwd_context.needs_update(user.password):
        logger.warning("User %r still has a plaintext password", user.usuario)

    settings: Settings = request.app.state.settings
    store: SessionStore = request.app.state.sessions
    store.delete(request.cookies.get(settings.session_cookie_name))
    token = store.create(user_snapshot(user))
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    logger.info("User %r logged in (rol=%s)", user.usuario, user.rol)
    return {"success": True}


@public.post("/logout", response_model=SuccessOut)
async def logout(
    response: Response,
    request: Request,
    token: Optional[str] = Depends(get_session_token),
    store: SessionStore = Depends(get_session_store),
):
    record = store.lookup(token)
    store.delete(token)
    if record is not None:
        logger.info("User %r logged out", record.user.get("usuario"))
    response.delete_cookie(request.app.state.settings.session_cookie_name)
    return {"success": True}


@public.get("/session", response_model=SessionOut, response_model_exclude_unset=True)
async def session_status(user: Optional[dict] = Depends(get_session_user)):
    if user is None:
        return {"loggedIn": False}
    return {"loggedIn": True, "user": user}


@public.get("/health")
async def health(request: Request):
    info = {"backend": "running", "database": "unavailable"}
    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            info["database"] = "available"
    except (SQLAlchemyError, OSError) as e:
        info["database"] = f"error: {str(e)[:160]}"
    return info


# ----------------------------------------------------------------------------
# Protected routes
# ----------------------------------------------------------------------------
protected = APIRouter(prefix="/api", dependencies=[Depends(require_access)])


@protected.get("/categorias", response_model=List[CategoriaOut])
async def list_categorias(db: AsyncSession = Depends(get_db)):
    result = await db.execute(CATEGORIAS_SQL)
    return [remap_fields(row, CATEGORIA_FIELDS) for row in result.mappings()]


@protected.post("/transacciones", response_model=MessageOut)
async def create_transaccion(payload: TransaccionIn, db: AsyncSession = Depends(get_db)):
    await db.execute(INSERT_TRANSACCION_SQL, _transaccion_params(payload))
    await db.commit()
    return {"message": "Guardado"}


@protected.get("/transacciones", response_model=List[TransaccionOut])
async def list_transacciones(db: AsyncSession = Depends(get_db)):
    result = await db.execute(TRANSACCIONES_SQL)
    return [remap_fields(row, TRANSACCION_FIELDS) for row in result.mappings()]


@protected.put("/transacciones/{transaccion_id}", response_model=MessageOut)
async def update_transaccion(transaccion_id: int, payload: TransaccionIn, db: AsyncSession = Depends(get_db)):
    # no existence check: updating a missing id is a silent no-op
    await db.execute(UPDATE_TRANSACCION_SQL, {**_transaccion_params(payload), "id": transaccion_id})
    await db.commit()
    return {"message": "Actualizado"}


@protected.delete("/transacciones/{transaccion_id}", response_model=MessageOut)
async def delete_transaccion(transaccion_id: int, db: AsyncSession = Depends(get_db)):
    await db.execute(DELETE_TRANSACCION_SQL, {"id": transaccion_id})
    await db.commit()
    return {"message": "Eliminado"}


@protected.get("/resumen", response_model=ResumenOut)
async def resumen(db: AsyncSession = Depends(get_db)):
    result = await db.execute(RESUMEN_SQL, {"ingreso": TIPO_INGRESO, "egreso": TIPO_EGRESO})
    row = result.mappings().one()
    # Postgres hands back NUMERIC sums as Decimal
    ingresos = float(row["total_ingresos"] or 0)
    egresos = float(row["total_egresos"] or 0)
    return ResumenOut(TotalIngresos=ingresos, TotalEgresos=egresos, Balance=ingresos - egresos)


@protected.get("/gastos-categoria", response_model=List[GastoCategoriaOut])
async def gastos_por_categoria(db: AsyncSession = Depends(get_db)):
    result = await db.execute(GASTOS_CATEGORIA_SQL, {"egreso": TIPO_EGRESO})
    data = []
    for row in result.mappings():
        item = remap_fields(row, GASTO_FIELDS)
        item["Total"] = float(item["Total"] or 0)
        data.append(item)
    return data


# ----------------------------------------------------------------------------
# App setup
# ----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
    sessions: Optional[SessionStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)
    engine = engine or build_engine(settings)
    sessions = sessions or SessionStore(ttl_seconds=settings.session_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await check_database(engine, create_schema=settings.create_schema)
        yield
        await engine.dispose()

    app = FastAPI(title="Finanzas API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app.state.sessions = sessions

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_exception_handler(OSError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(public)
    app.include_router(protected)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
