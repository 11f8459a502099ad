from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import math
from pathlib import Path
import time
from typing import Any, Dict, Mapping, Optional

import aiosqlite

from auth import hash_password, verify_password
from config import MAX_UPLOAD_BYTES, PAGE_SIZE, Settings
from database import Database, ImageRecord, UserRecord
from errors import ErrorKind, PixBoardError
from imaging import detect_orientation, guess_content_type, is_image_type, resize_to_png


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password."
REGISTRATION_FAILED = "Email already exists or registration failed."
IMAGE_NOT_FOUND = "The requested image could not be found"
# Keeps (page - 1) * PAGE_SIZE well inside SQLite's 64-bit INTEGER range.
MAX_PAGE = 1_000_000


@dataclass
class SessionUser:
    """The slice of a user that is carried by a session."""

    id: int
    email: str
    username: str

    @classmethod
    def from_record(cls, user: UserRecord) -> "SessionUser":
        return cls(id=user.id, email=user.email, username=user.username)


@dataclass
class Page:
    template: str
    context: Dict[str, Any] = field(default_factory=dict)
    status: int = 200


@dataclass
class Redirect:
    location: str
    # Set when the redirect must also open a session for this user.
    login_user: Optional[SessionUser] = None


def can_mutate(actor: Optional[SessionUser], image: ImageRecord) -> bool:
    """Only the uploader may edit or delete an image."""
    return actor is not None and image.user_id == actor.id


def normalize_redirect_path(raw: Optional[str], default: str = "/") -> str:
    """Ensure redirect targets stay on this site (rooted, not protocol-relative)."""
    candidate = (raw or "").strip()
    if not candidate.startswith("/") or candidate.startswith("//"):
        return default
    return candidate


def parse_page(raw: Optional[str]) -> int:
    try:
        page = int(str(raw or "").strip())
    except ValueError:
        return 1
    if page < 1:
        return 1
    return min(page, MAX_PAGE)


def resume_path(path: Optional[str]) -> str:
    """Page to return to after login; POST-only actions fall back to something viewable."""
    target = normalize_redirect_path(path)
    if target.endswith("/delete"):
        return target[: -len("/delete")] or "/"
    return target


def _parse_image_id(raw: Optional[str]) -> int:
    value = str(raw or "").strip()
    if not value.isdigit():
        raise PixBoardError(ErrorKind.NOT_FOUND, IMAGE_NOT_FOUND)
    return int(value)


# Authentication


async def register(db: Database, form: Mapping[str, str]) -> Redirect:
    """Create an account and sign the new user in."""
    username = (form.get("username") or "").strip()
    email = (form.get("email") or "").strip().lower()
    password = form.get("password") or ""
    confirm = form.get("confirmPassword") or form.get("confirm_password") or ""
    if password != confirm:
        raise PixBoardError(ErrorKind.VALIDATION, "Passwords do not match")
    password_hash = await asyncio.to_thread(hash_password, password)
    try:
        user = await db.create_user(username, email, password_hash)
    except (aiosqlite.Error, RuntimeError) as exc:
        # Duplicate emails and other write failures look the same to the visitor.
        logger.warning("registration rejected email=%s reason=%s", email, exc)
        raise PixBoardError(ErrorKind.CONFLICT, REGISTRATION_FAILED) from exc
    logger.info("user registered user_id=%s", user.id)
    return Redirect("/", login_user=SessionUser.from_record(user))


async def login(
    db: Database, form: Mapping[str, str], redirect_to: Optional[str] = None
) -> Redirect:
    """Check credentials; unknown email and wrong password fail identically."""
    email = (form.get("email") or "").strip().lower()
    password = form.get("password") or ""
    user = await db.fetch_user_by_email(email) if email else None
    if user is None or not await asyncio.to_thread(
        verify_password, password, user.password_hash
    ):
        logger.warning("login rejected email=%s", email)
        raise PixBoardError(ErrorKind.AUTH, INVALID_CREDENTIALS)
    logger.info("login succeeded user_id=%s", user.id)
    return Redirect(
        normalize_redirect_path(redirect_to),
        login_user=SessionUser.from_record(user),
    )


# Images


def _write_new_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "xb") as handle:
        handle.write(data)


async def upload_image(
    db: Database,
    settings: Settings,
    actor: SessionUser,
    *,
    filename: Optional[str],
    data: Optional[bytes],
    form: Mapping[str, str],
) -> Page:
    """Validate, resize and store an upload, then record its metadata."""
    if not filename or data is None:
        raise PixBoardError(ErrorKind.VALIDATION, "No file uploaded")
    if not is_image_type(guess_content_type(filename)):
        raise PixBoardError(ErrorKind.VALIDATION, "Only image files are allowed!")
    if len(data) > MAX_UPLOAD_BYTES:
        raise PixBoardError(
            ErrorKind.VALIDATION, "File too large. Maximum size is 5 MB."
        )

    stored_name = f"{actor.id}_{int(time.time() * 1000)}.png"
    path = settings.upload_dir / stored_name
    logger.info(
        "upload started user_id=%s filename=%s bytes=%s", actor.id, filename, len(data)
    )
    try:
        orientation = await asyncio.to_thread(detect_orientation, data)
        resized = await asyncio.to_thread(resize_to_png, data)
        await asyncio.to_thread(_write_new_file, path, resized)
    except FileExistsError as exc:
        logger.warning("upload rejected user_id=%s reason=filename_collision", actor.id)
        raise PixBoardError(
            ErrorKind.CONFLICT, "Upload failed: please try again in a moment."
        ) from exc
    except Exception as exc:
        logger.exception("upload failed user_id=%s filename=%s", actor.id, filename)
        raise PixBoardError(ErrorKind.INTERNAL, f"Upload failed: {exc}") from exc

    try:
        record = await db.create_image(
            title=form.get("title") or "Untitled",
            description=form.get("description") or "",
            tags=form.get("tags") or "",
            orientation=orientation,
            filename=stored_name,
            url=f"/uploads/{stored_name}",
            user_id=actor.id,
            username=actor.username,
        )
    except Exception as exc:
        logger.exception("upload failed user_id=%s reason=db_error", actor.id)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        raise PixBoardError(ErrorKind.INTERNAL, f"Database error: {exc}") from exc

    logger.info(
        "upload completed user_id=%s image_id=%s orientation=%s",
        actor.id,
        record.id,
        orientation,
    )
    return Page(
        "upload.html",
        {
            "title": "Upload Image",
            "success": "Image uploaded successfully!",
            "image": record,
        },
    )


async def list_images(
    db: Database, *, search: Optional[str] = None, page: Optional[str] = None
) -> Page:
    """Public gallery: newest first, nine per page, optional title/tag filter."""
    term = (search or "").strip()
    page_number = parse_page(page)
    offset = (page_number - 1) * PAGE_SIZE
    try:
        images = await db.list_images(search=term, limit=PAGE_SIZE, offset=offset)
        total = await db.count_images(search=term)
    except aiosqlite.Error as exc:
        logger.exception("gallery listing failed search=%s page=%s", term, page_number)
        raise PixBoardError(ErrorKind.INTERNAL, "Failed to load images") from exc
    return Page(
        "imagelist.html",
        {
            "title": "Image Gallery",
            "images": images,
            "search": term,
            "page": page_number,
            "total_pages": max(1, math.ceil(total / PAGE_SIZE)),
            "has_prev": page_number > 1,
            "has_next": offset + len(images) < total,
        },
    )


async def my_images(db: Database, actor: SessionUser) -> Page:
    try:
        images = await db.list_images_for_user(actor.id)
    except aiosqlite.Error as exc:
        logger.exception("my-images listing failed user_id=%s", actor.id)
        raise PixBoardError(ErrorKind.INTERNAL, "Failed to load images") from exc
    return Page("my-image-list.html", {"title": "My Images", "images": images})


async def image_detail(db: Database, raw_id: Optional[str]) -> Page:
    image = await db.fetch_image(_parse_image_id(raw_id))
    if image is None:
        raise PixBoardError(ErrorKind.NOT_FOUND, IMAGE_NOT_FOUND)
    return Page("imagedetail.html", {"title": image.title, "image": image})


async def _owned_image(
    db: Database, raw_id: Optional[str], actor: SessionUser, denied: str
) -> ImageRecord:
    image = await db.fetch_image(_parse_image_id(raw_id))
    if image is None:
        raise PixBoardError(ErrorKind.NOT_FOUND, IMAGE_NOT_FOUND)
    if not can_mutate(actor, image):
        logger.warning(
            "mutation rejected user_id=%s image_id=%s reason=not_owner",
            actor.id,
            image.id,
        )
        raise PixBoardError(ErrorKind.FORBIDDEN, denied)
    return image


async def edit_form(db: Database, raw_id: Optional[str], actor: SessionUser) -> Page:
    image = await _owned_image(db, raw_id, actor, "Update failed or unauthorized")
    return Page("edit-image.html", {"title": f"Edit {image.title}", "image": image})


async def edit_image(
    db: Database, raw_id: Optional[str], actor: SessionUser, form: Mapping[str, str]
) -> Redirect:
    """Apply new title/description/tags; values are stored exactly as submitted."""
    image = await _owned_image(db, raw_id, actor, "Update failed or unauthorized")
    try:
        updated = await db.update_image(
            image.id,
            actor.id,
            title=form.get("title", ""),
            description=form.get("description", ""),
            tags=form.get("tags", ""),
        )
    except aiosqlite.Error as exc:
        logger.exception("edit failed user_id=%s image_id=%s", actor.id, image.id)
        raise PixBoardError(
            ErrorKind.INTERNAL, f"Update failed: {exc}"
        ) from exc
    if not updated:
        raise PixBoardError(ErrorKind.FORBIDDEN, "Update failed or unauthorized")
    logger.info("image edited user_id=%s image_id=%s", actor.id, image.id)
    return Redirect(f"/images/{image.id}")


async def delete_image(
    db: Database, settings: Settings, raw_id: Optional[str], actor: SessionUser
) -> Redirect:
    """Remove the row, then its file; a leftover file is the accepted failure mode."""
    image = await _owned_image(db, raw_id, actor, "Delete failed or unauthorized")
    try:
        deleted = await db.delete_image(image.id)
    except aiosqlite.Error as exc:
        logger.exception(
            "delete failed user_id=%s image_id=%s reason=db_error", actor.id, image.id
        )
        raise PixBoardError(ErrorKind.INTERNAL, "Failed to delete image") from exc
    if not deleted:
        raise PixBoardError(ErrorKind.INTERNAL, "Failed to delete image")
    path = settings.upload_dir / image.filename
    try:
        await asyncio.to_thread(path.unlink, missing_ok=True)
    except OSError:
        logger.exception(
            "file removal failed image_id=%s filename=%s", image.id, image.filename
        )
    logger.info("delete completed user_id=%s image_id=%s", actor.id, image.id)
    return Redirect("/images")


async def home(db: Database) -> Page:
    images = await db.list_images(limit=PAGE_SIZE)
    return Page("home.html", {"title": "Home", "images": images})
