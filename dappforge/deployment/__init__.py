"""Publishing adapters: source control and hosting."""

from .github import GitHubPublisher, RepoResult, generate_repo_name, parse_repo_url
from .vercel import HostingResult, VercelDeployer, generate_project_name

__all__ = [
    "GitHubPublisher",
    "HostingResult",
    "RepoResult",
    "VercelDeployer",
    "generate_project_name",
    "generate_repo_name",
    "parse_repo_url",
]
