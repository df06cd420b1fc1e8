"""Webhook payload schema and HTTP response models.

Only the parts of the Bitbucket pull request payload that the review needs
are modelled; everything else in the body is ignored.
"""

import json
from typing import Annotated, Any, Optional

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    StringConstraints,
    TypeAdapter,
    UrlConstraints,
    ValidationError,
    field_validator,
    model_validator,
)

from common.errors import SchemaError
from common.job_models import ReviewRequest

# Letters, digits and _./- only, and no leading "-" so a branch can never be
# read as a command-line option.
SAFE_BRANCH_PATTERN = r"^[A-Za-z0-9_./][A-Za-z0-9_./-]*$"

SafeBranchName = Annotated[str, StringConstraints(pattern=SAFE_BRANCH_PATTERN)]
NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]
HttpsUrl = Annotated[AnyUrl, UrlConstraints(allowed_schemes=["https"], host_required=True)]

_HTTPS_URL = TypeAdapter(HttpsUrl)


class BranchName(BaseModel):
    name: SafeBranchName


class BranchRef(BaseModel):
    branch: BranchName


class Link(BaseModel):
    href: HttpUrl


class NamedLink(BaseModel):
    # ssh links are not HTTP URLs; only the https entry is checked, in RepositoryLinks.
    name: str
    href: str


class PullRequestLinks(BaseModel):
    html: Link


class PullRequestAuthor(BaseModel):
    display_name: NonEmptyStr


class PullRequestPayload(BaseModel):
    title: NonEmptyStr
    description: Optional[str] = None
    author: PullRequestAuthor
    source: BranchRef
    destination: BranchRef
    links: PullRequestLinks


class RepositoryLinks(BaseModel):
    clone: Optional[list[NamedLink]] = None
    html: Link

    @field_validator("clone")
    @classmethod
    def _https_clone_link_is_well_formed(cls, links: Optional[list[NamedLink]]) -> Optional[list[NamedLink]]:
        for link in links or []:
            if link.name != "https":
                continue
            try:
                _HTTPS_URL.validate_python(link.href)
            except ValidationError:
                raise ValueError(f"https clone link is not a well-formed HTTPS URL: {link.href!r}") from None
        return links

    @model_validator(mode="after")
    def _has_https_clone_url(self) -> "RepositoryLinks":
        if not self.clone_url.startswith("https://"):
            raise ValueError("An HTTPS clone URL is required")
        return self

    @property
    def clone_url(self) -> str:
        """The ``https`` clone link, falling back to the repository's html link."""
        for link in self.clone or []:
            if link.name == "https":
                return link.href
        return str(self.html.href)


class RepositoryPayload(BaseModel):
    name: NonEmptyStr
    links: RepositoryLinks


class BitbucketPullRequestWebhook(BaseModel):
    pullrequest: PullRequestPayload
    repository: RepositoryPayload


def parse_json_body(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise SchemaError([{"field": "body", "message": f"Body is not valid JSON: {exc}"}]) from exc
    if not isinstance(data, dict):
        raise SchemaError([{"field": "body", "message": "Body must be a JSON object"}])
    return data


def extract_workspace(payload: dict[str, Any]) -> Optional[str]:
    """Workspace slug of the sending repository, falling back to the owner's username."""
    repository = payload.get("repository")
    if not isinstance(repository, dict):
        return None
    workspace = repository.get("workspace")
    if isinstance(workspace, dict) and workspace.get("slug"):
        return str(workspace["slug"])
    owner = repository.get("owner")
    if isinstance(owner, dict) and owner.get("username"):
        return str(owner["username"])
    return None


def validate_pull_request_payload(payload: dict[str, Any]) -> ReviewRequest:
    """
    Validate a decoded webhook body and build the ReviewRequest.

    Raises:
        SchemaError: listing every violated field (dotted path + message)
    """
    try:
        webhook = BitbucketPullRequestWebhook.model_validate(payload)
    except ValidationError as exc:
        raise SchemaError(
            [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
        ) from exc

    pr = webhook.pullrequest
    return ReviewRequest(
        repository_name=webhook.repository.name,
        clone_url=webhook.repository.links.clone_url,
        source_branch=pr.source.branch.name,
        destination_branch=pr.destination.branch.name,
        title=pr.title,
        description=pr.description or "",
        author=pr.author.display_name,
        pull_request_url=str(pr.links.html.href),
    )


# ── Responses ─────────────────────────────────────────────────────────────


class WebhookAcceptedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    pr_title: str = Field(alias="prTitle")
    queue_position: int = Field(alias="queuePosition")


class WebhookIgnoredResponse(BaseModel):
    message: str
    event: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str = "PR review service is running"
