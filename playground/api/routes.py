from __future__ import annotations

from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Query, Response
from fastapi.responses import RedirectResponse

from playground.api.schemas import (
    MAX_FILE_BATCH,
    AuthResponse,
    CreateFolderRequest,
    CreateVideoRequest,
    DeleteFilesResponse,
    Envelope,
    FileListResponse,
    FolderFamilyResponse,
    LogoutAllResponse,
    MoveFilesRequest,
    MoveFilesResponse,
    OAuthStartRequest,
    OAuthStartResponse,
    UpdateFileRequest,
    UserFileResponse,
    UserResponse,
    VideoPreviewResponse,
)
from playground.logging import bind_principal
from playground.service.auth import AuthContext
from playground.service.errors import ValidationError
from playground.service.runtime import get_runtime
from playground.storage.models import ROOT_FOLDER_ID

router = APIRouter(prefix="/v1")


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Query(None, max_length=4096),
) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization, access_token)
    bind_principal(principal.user_id, principal.session_id)
    return principal


# -- auth -------------------------------------------------------------------


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., description="OAuth provider (google, github)"),
    body: Optional[OAuthStartRequest] = None,
):
    """Start the OAuth flow and hand back the provider authorization URL."""
    runtime = get_runtime()
    start = await runtime.auth.start_oauth(
        provider, redirect_uri=body.redirect_uri if body else None
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., description="OAuth provider"),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
    authorization: Optional[str] = Header(None),
):
    """Complete the OAuth flow.

    A valid bearer token on the callback links the provider identity to the
    caller's account instead of signing in as a new user.
    """
    runtime = get_runtime()
    user, session, token = await runtime.auth.complete_oauth(
        provider, code, state, current_token=runtime.auth.extract_bearer(authorization)
    )
    redirect = runtime.settings.login_redirect_url
    if redirect:
        separator = "&" if "?" in redirect else "?"
        return RedirectResponse(
            f"{redirect}{separator}{urlencode({'access_token': token})}", status_code=302
        )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
            access_token=token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=LogoutAllResponse(revoked_sessions=count))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.user_for(principal)
    return Envelope(status="ok", data=UserResponse.from_model(user))


# -- files ------------------------------------------------------------------


@router.get("/files", response_model=Envelope, tags=["files"])
async def list_files(
    folder: str = Query(ROOT_FOLDER_ID, max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items = await runtime.files.list_files(principal.user_id, folder)
    return Envelope(
        status="ok",
        data=FileListResponse(
            folder_id=folder, items=[UserFileResponse.from_model(node) for node in items]
        ),
    )


@router.get("/files/folder/{folder_id}", response_model=Envelope, tags=["files"])
async def get_folder(
    folder_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Folder with its breadcrumb trail (root-most first) and direct children."""
    runtime = get_runtime()
    family = await runtime.files.get_folder(principal.user_id, folder_id)
    return Envelope(
        status="ok",
        data=FolderFamilyResponse(
            folder=UserFileResponse.from_model(family.folder) if family.folder else None,
            ancestors=[UserFileResponse.from_model(node) for node in family.ancestors],
            children=[UserFileResponse.from_model(node) for node in family.children],
        ),
    )


@router.post("/files/folder", response_model=Envelope, status_code=201, tags=["files"])
async def create_folder(
    body: CreateFolderRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    node = await runtime.files.create_folder(principal.user_id, body.folder_id, body.name)
    return Envelope(status="ok", data=UserFileResponse.from_model(node))


@router.get("/files/video/metadata", response_model=Envelope, tags=["files"])
async def video_metadata(
    video_id: str = Query(..., max_length=2048, description="Drive file id or share link"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    remote = await runtime.files.preview_video(video_id)
    return Envelope(
        status="ok",
        data=VideoPreviewResponse(
            remote_id=remote.remote_id,
            name=remote.default_name,
            duration_millis=remote.duration_millis,
            width=remote.width,
            height=remote.height,
            mime_type=remote.mime_type,
            size_bytes=remote.size_bytes,
            thumbnail=remote.default_thumbnail,
        ),
    )


@router.post("/files/video/{remote_id}", response_model=Envelope, status_code=201, tags=["files"])
async def create_video(
    remote_id: str = Path(..., max_length=256),
    body: Optional[CreateVideoRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    body = body or CreateVideoRequest()
    node = await runtime.files.create_video(
        principal.user_id,
        body.folder_id,
        remote_id,
        name=body.name,
        thumbnail=body.thumbnail,
    )
    return Envelope(status="ok", data=UserFileResponse.from_model(node))


@router.put("/files/move", response_model=Envelope, tags=["files"])
async def move_files(body: MoveFilesRequest, principal: AuthContext = Depends(get_user)):
    """Move several files at once; ids that cannot be moved are skipped."""
    runtime = get_runtime()
    result = await runtime.files.move_many(principal.user_id, body.file_ids, body.folder_id)
    return Envelope(
        status="ok",
        data=MoveFilesResponse(moved_count=result.moved_count, moved_ids=result.moved_ids),
    )


@router.patch("/files/{file_id}", response_model=Envelope, tags=["files"])
async def update_file(
    body: UpdateFileRequest,
    file_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    node = await runtime.files.update(
        principal.user_id, file_id, name=body.name, folder_id=body.folder_id
    )
    return Envelope(status="ok", data=UserFileResponse.from_model(node))


@router.delete("/files/{file_id}", response_model=Envelope, tags=["files"])
async def delete_file(
    file_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    node = await runtime.files.delete(principal.user_id, file_id)
    return Envelope(status="ok", data={"deleted": node.id})


@router.delete("/files", response_model=Envelope, tags=["files"])
async def delete_files(
    file_ids: List[str] = Query(..., alias="file_id"),
    principal: AuthContext = Depends(get_user),
):
    """Delete several files at once; folders that still hold other files are skipped."""
    if len(file_ids) > MAX_FILE_BATCH:
        raise ValidationError(
            f"at most {MAX_FILE_BATCH} files per request", detail={"count": len(file_ids)}
        )
    runtime = get_runtime()
    result = await runtime.files.delete_many(principal.user_id, file_ids)
    return Envelope(
        status="ok",
        data=DeleteFilesResponse(
            deleted_count=result.deleted_count, deleted_ids=result.deleted_ids
        ),
    )


@router.get("/files/{file_id}/stream", tags=["files"])
async def stream_video(
    file_id: str = Path(..., max_length=128),
    range_header: Optional[str] = Header(None, alias="Range"),
    principal: AuthContext = Depends(get_user),
):
    """Proxy one byte window of a video from its provider."""
    runtime = get_runtime()
    chunk = await runtime.files.stream_video(principal.user_id, file_id, range_header)
    headers = {"Accept-Ranges": "bytes"}
    if chunk.content_range:
        headers["Content-Range"] = chunk.content_range
    return Response(
        content=chunk.content,
        status_code=206 if chunk.partial else 200,
        media_type=chunk.content_type,
        headers=headers,
    )
