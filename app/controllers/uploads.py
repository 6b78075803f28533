from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel

from app.controllers.chat import store_image
from app.dependencies import ErrorResponse, rate_limit

router = APIRouter()


class UploadImageResponse(BaseModel):
    success: bool = True
    image_url: str


@router.post(
    "/uploadImage",
    response_model=UploadImageResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}},
)
async def upload_image(
    file: UploadFile = File(...),
    user_id: str = Depends(rate_limit),
):
    image_url = await store_image(user_id, file)
    return UploadImageResponse(image_url=image_url)
