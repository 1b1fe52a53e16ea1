from pydantic import BaseModel


class CaptchaResponse(BaseModel):
    id: str
    renderable: str
