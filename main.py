import dataclasses
import logging
import os
from typing import Optional

import typer
import uvicorn

from accounts import AccountStore
from catalog import Catalog, CatalogError, MissingIdentityError
from config import Settings, settings
from covers import CoverStorage
from importer import ImportFormatError, import_file
from utils.ui_helpers import print_album_list, print_user_list, set_output_mode

APP_NAME = "Album Catalog CLI"

# Settings for the current invocation, adjusted by global options
_state = {"settings": settings}

app = typer.Typer(help=APP_NAME)


def _settings() -> Settings:
    return _state["settings"]


def _catalog() -> Catalog:
    s = _settings()
    return Catalog(
        db_file=s.database_file,
        covers=CoverStorage(s.images_dir),
        admins=s.admin_users,
        delete_replaced_covers=s.delete_replaced_covers,
    )


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
    images: Optional[str] = typer.Option(None, "--images", help="Cover image directory"),
):
    """Global CLI options."""
    if output:
        set_output_mode(output)
    overrides = {}
    if db:
        overrides["database_file"] = db
    if images:
        overrides["images_dir"] = images
    _state["settings"] = dataclasses.replace(settings, **overrides)
    logging.basicConfig(level=_settings().log_level.upper())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP API."""
    s = _settings()
    host = host or s.api_host
    port = port or s.api_port
    if reload:
        # The reloader imports the app in a fresh process, which reads config from the environment
        os.environ["ALBUM_DB_FILE"] = s.database_file
        os.environ["ALBUM_IMAGES_DIR"] = s.images_dir
        uvicorn.run("api:create_app", factory=True, host=host, port=port, reload=True)
    else:
        from api import create_app
        uvicorn.run(create_app(s), host=host, port=port)


@app.command("list")
def cli_list(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Title/artist substring"),
    owner: Optional[str] = typer.Option(None, "--owner", help="ALL, BORROWED_BY_ME or an owner name"),
    as_user: Optional[str] = typer.Option(None, "--as", help="Current user for BORROWED_BY_ME"),
):
    """List albums ordered by owner and local id."""
    try:
        albums = _catalog().list_albums(search=search, owner=owner, requester=as_user)
    except MissingIdentityError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=2)
    print_album_list(albums)


@app.command("import")
def cli_import(
    file_path: str = typer.Argument(..., help="Text file with one 'artist,title' per line"),
    owner: str = typer.Option(..., "--owner", help="Collection to import into"),
    year: int = typer.Option(..., "--year", help="Release year for every imported album"),
):
    """Bulk-import albums from a comma-separated file."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    try:
        with open(file_path, "rb") as f:
            albums = import_file(_catalog(), f, owner, year)
    except (ImportFormatError, ValueError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    except CatalogError as e:
        print(f"Import failed: {e}")
        raise typer.Exit(code=1)
    print(f"Imported {len(albums)} album(s) for {owner}.")


@app.command("users")
def cli_users():
    """List registered nicknames."""
    s = _settings()
    print_user_list(AccountStore(db_file=s.database_file, rounds=s.bcrypt_rounds).list_usernames())


if __name__ == "__main__":
    app()
