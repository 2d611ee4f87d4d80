"""Content extractor output model"""

from pydantic import BaseModel, Field


class ExtractedContent(BaseModel):
    """Title and plain text returned by a content extractor"""

    title: str = Field(default="Untitled", description="Document title")
    content: str = Field(description="Plain text with markdown-style headings (may be empty)")
    url: str | None = Field(default=None, description="Link to the original document")


class PageSummary(BaseModel):
    """A page visible to a provider connection, as listed by search"""

    id: str = Field(description="Provider page identifier (usable as external_id)")
    title: str = Field(default="Untitled", description="Page title")
    url: str | None = Field(default=None, description="Link to the page")
    last_edited_time: str | None = Field(default=None, description="Provider edit timestamp")
