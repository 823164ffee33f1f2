import io
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, Security, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from accounts import AccountStore, InvalidPasswordError, InvalidTokenError, TokenService, UnknownUserError
from album import Album
from catalog import (
    OWNER_BORROWED_BY_ME,
    UNSET,
    AlbumNotFoundError,
    Catalog,
    CatalogError,
    MissingIdentityError,
    PermissionDeniedError,
)
from config import Settings, settings as default_settings
from covers import CoverStorage, CoverUpload
from database import get_db_connection
from importer import ImportFormatError, import_file
from policy import same_identity

logger = logging.getLogger(__name__)

REQUESTER_HEADER = "X-Current-User"


# --- Models ---
class AlbumModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    local_id: int
    artist: str
    title: str
    release_year: int
    owner: str
    cover_file_name: str | None = None
    lent_to: str | None = None


class AuthModel(BaseModel):
    email: Optional[str] = None  # registration only
    password: str = ""
    nickname: str = ""


class MessageModel(BaseModel):
    message: str


class LoginResponse(BaseModel):
    message: str
    user: str
    access_token: str
    token_type: str = "bearer"


class ImportResponse(BaseModel):
    message: str
    imported: int


def _album_model(album: Album) -> AlbumModel:
    return AlbumModel(**album.to_dict())


# --- Dependencies ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


def get_accounts(request: Request) -> AccountStore:
    return request.app.state.accounts


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def get_requester(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    current_user: Optional[str] = Header(None, alias=REQUESTER_HEADER),
) -> Optional[str]:
    """Resolve who is calling.

    A bearer token from /account/login is authoritative and a header that
    disagrees with it is rejected. Without a token the X-Current-User header
    names the caller, unless the trust flag is off, in which case the header
    alone is refused.
    """
    current_user = current_user or None
    if credentials is not None:
        try:
            username = get_tokens(request).decode(credentials.credentials)
        except InvalidTokenError as e:
            raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"})
        if current_user and not same_identity(current_user, username):
            raise HTTPException(status_code=401, detail=f"{REQUESTER_HEADER} does not match the signed-in user.")
        return username
    if current_user:
        if get_settings(request).trust_requester_header:
            return current_user
        raise HTTPException(
            status_code=401,
            detail=f"{REQUESTER_HEADER} cannot be verified; sign in and send a bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return None


def get_list_requester(
    request: Request,
    owner: Optional[str] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    current_user: Optional[str] = Header(None, alias=REQUESTER_HEADER),
) -> Optional[str]:
    """Caller for listings; only BORROWED_BY_ME needs to know who is asking."""
    if credentials is None and owner != OWNER_BORROWED_BY_ME:
        return None
    return get_requester(request, credentials, current_user)


def _internal_error(settings: Settings, error: Exception, fallback: str) -> HTTPException:
    if settings.expose_error_details:
        return HTTPException(status_code=500, detail=f"{fallback}: {error}")
    return HTTPException(status_code=500, detail=fallback)


def _read_cover(upload: Optional[UploadFile]) -> Optional[CoverUpload]:
    if upload is None:
        return None
    data = upload.file.read()
    if not data:
        return None
    return CoverUpload(filename=upload.filename or "", data=data)


# --- Account ---
account_router = APIRouter(prefix="/account", tags=["account"])


@account_router.post("/register", response_model=MessageModel)
def register(model: AuthModel, accounts: AccountStore = Depends(get_accounts)):
    """Create an account; the nickname becomes the login and owner name."""
    errors = accounts.register(model.nickname, model.password, model.email)
    if errors:
        raise HTTPException(status_code=400, detail=errors)
    return MessageModel(message="Registration successful")


@account_router.post("/login", response_model=LoginResponse)
def login(model: AuthModel, accounts: AccountStore = Depends(get_accounts),
          tokens: TokenService = Depends(get_tokens)):
    try:
        username = accounts.authenticate(model.nickname, model.password)
    except (UnknownUserError, InvalidPasswordError) as e:
        raise HTTPException(status_code=401, detail=str(e))
    return LoginResponse(message="Login successful", user=username, access_token=tokens.issue(username))


@account_router.get("/users", response_model=List[str])
def list_users(accounts: AccountStore = Depends(get_accounts)):
    return accounts.list_usernames()


# --- Albums ---
albums_router = APIRouter(prefix="/albums", tags=["albums"])


@albums_router.get("", response_model=List[AlbumModel])
def get_albums(
    search: Optional[str] = None,
    owner: Optional[str] = None,
    requester: Optional[str] = Depends(get_list_requester),
    catalog: Catalog = Depends(get_catalog),
):
    """List albums ordered by owner, then local id.

    `owner` is ALL, BORROWED_BY_ME (albums lent to the caller) or an owner name.
    """
    try:
        albums = catalog.list_albums(search=search, owner=owner, requester=requester)
    except MissingIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_album_model(a) for a in albums]


@albums_router.post("", response_model=AlbumModel)
def create_album(
    title: str = Form(...),
    artist: str = Form(...),
    release_year: int = Form(..., alias="releaseYear"),
    owner: str = Form(...),
    lent_to: Optional[str] = Form(None, alias="lentTo"),
    cover_image: Optional[UploadFile] = File(None, alias="coverImage"),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
):
    try:
        album = catalog.create_album(title=title, artist=artist, release_year=release_year, owner=owner,
                                     cover=_read_cover(cover_image), lent_to=lent_to)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CatalogError as e:
        raise _internal_error(settings, e, "Database error")
    return _album_model(album)


@albums_router.post("/import", response_model=ImportResponse)
def import_albums(
    file: Optional[UploadFile] = File(None),
    owner: str = Form(...),
    year: int = Form(...),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
):
    """Append albums from a text file of `artist,title` lines to `owner`'s collection."""
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    data = file.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    try:
        albums = import_file(catalog, io.BytesIO(data), owner, year)
    except (ImportFormatError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CatalogError as e:
        raise _internal_error(settings, e, "Import failed")
    return ImportResponse(message="Import successful", imported=len(albums))


@albums_router.put("/{album_id}", status_code=204)
def update_album(
    album_id: int,
    release_year: int = Form(..., alias="releaseYear"),
    title: Optional[str] = Form(None),
    artist: Optional[str] = Form(None),
    lent_to: Optional[str] = Form(None, alias="lentTo"),
    cover_image: Optional[UploadFile] = File(None, alias="coverImage"),
    requester: Optional[str] = Depends(get_requester),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
):
    """Update an album. Omitted title/artist keep their values; ownership never changes."""
    if not requester:
        raise HTTPException(status_code=400, detail=f"Missing {REQUESTER_HEADER} header or bearer token.")
    try:
        catalog.update_album(
            album_id,
            requester,
            release_year=release_year,
            lent_to=lent_to,
            title=title if title and title.strip() else UNSET,
            artist=artist if artist and artist.strip() else UNSET,
            cover=_read_cover(cover_image),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AlbumNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except MissingIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CatalogError as e:
        raise _internal_error(settings, e, "Database error")
    return Response(status_code=204)


@albums_router.delete("/{album_id}", status_code=204)
def delete_album(
    album_id: int,
    requester: Optional[str] = Depends(get_requester),
    catalog: Catalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
):
    if not requester:
        raise HTTPException(status_code=400, detail=f"Missing {REQUESTER_HEADER} header or bearer token.")
    try:
        catalog.delete_album(album_id, requester)
    except AlbumNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except MissingIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CatalogError as e:
        raise _internal_error(settings, e, "Database error")
    return Response(status_code=204)


# --- Application ---
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application with its catalog, accounts and cover storage."""
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
    app.state.settings = settings
    app.state.covers = CoverStorage(settings.images_dir)
    app.state.catalog = Catalog(
        db_file=settings.database_file,
        covers=app.state.covers,
        admins=settings.admin_users,
        delete_replaced_covers=settings.delete_replaced_covers,
    )
    app.state.accounts = AccountStore(db_file=settings.database_file, rounds=settings.bcrypt_rounds)
    app.state.tokens = TokenService(
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        expiration_minutes=settings.jwt_expiration_minutes,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_response_headers(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith(settings.images_url_path + "/"):
            # Cover names are generated and never reused
            response.headers["Cache-Control"] = "public, max-age=86400"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/health")
    def health():
        """Lightweight health check with a quick database round trip."""
        db_ok = True
        try:
            conn = get_db_connection(settings.database_file)
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
        except Exception as e:
            logger.error(f"Health check database query failed: {e}")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_albums": app.state.catalog.count_albums() if db_ok else None,
            "db": db_ok,
        }

    app.include_router(account_router)
    app.include_router(albums_router)
    app.mount(settings.images_url_path, StaticFiles(directory=settings.images_dir), name="images")
    return app
