# shared/models/common.py
from pydantic import BaseModel, ConfigDict, Field


class UserProfile(BaseModel):
    """
    User record published on sign-up. Only the email address is consumed;
    any other fields the producer sends are ignored, whatever their type.
    """
    model_config = ConfigDict(extra='ignore')

    email: str = Field(..., min_length=1, description="Address the welcome email goes to")


class EmailMessage(BaseModel):
    """A single plain-text email, built and sent within one Mailer.send call."""
    model_config = ConfigDict(frozen=True)

    from_address: str
    to: str
    subject: str
    text: str

    def __str__(self) -> str:
        return f"EmailMessage(from={self.from_address}, to={self.to}, subject={self.subject!r})"
