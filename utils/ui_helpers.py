import os
import json
from typing import List, Any
from rich.console import Console
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "ALBUM_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_album_list(albums: List[Any]) -> None:
    """Print albums in the current output mode.
    - plain: 'owner #local_id - Title by Artist (year)' lines, or 'No albums in catalog.'
    - json: JSON array using the API's field names
    - rich: Rich table
    """
    mode = get_output_mode()

    if not albums:
        print("No albums in catalog.")
        return

    if mode == "json":
        payload = [
            {
                "id": a.id,
                "localId": a.local_id,
                "artist": a.artist,
                "title": a.title,
                "releaseYear": a.release_year,
                "owner": a.owner,
                "coverFileName": a.cover_file_name,
                "lentTo": a.lent_to,
            }
            for a in albums
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="💿 Albums", show_lines=True, header_style="bold cyan")
        table.add_column("Owner", style="magenta", no_wrap=True)
        table.add_column("#", justify="right")
        table.add_column("Title", style="white")
        table.add_column("Artist", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Lent to", style="yellow")
        for a in albums:
            table.add_row(a.owner, str(a.local_id), a.title, a.artist, str(a.release_year), a.lent_to or "")
        _console.print(table)
    else:
        for a in albums:
            line = f"{a.owner} #{a.local_id} - {a.title} by {a.artist} ({a.release_year})"
            if a.is_lent:
                line += f" [lent to {a.lent_to}]"
            print(line)


def print_user_list(usernames: List[str]) -> None:
    mode = get_output_mode()
    if not usernames:
        print("No registered users.")
        return
    if mode == "json":
        print(json.dumps(usernames, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Users", header_style="bold cyan")
        table.add_column("Nickname", style="magenta")
        for name in usernames:
            table.add_row(name)
        _console.print(table)
    else:
        for name in usernames:
            print(name)
