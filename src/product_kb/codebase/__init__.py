"""Repository connections, file parsing and module sync."""

from product_kb.codebase.parser import (
    ParsedModule,
    detect_language,
    detect_module_type,
    parse_file,
    should_include_file,
)
from product_kb.codebase.provider import (
    GitHubClient,
    RateLimitError,
    RepoFile,
    SourceControlError,
    SourceControlProvider,
    parse_repo_name,
)
from product_kb.codebase.sync import (
    CodebaseSyncPipeline,
    fallback_summary,
    github_provider_factory,
)

__all__ = [
    "CodebaseSyncPipeline",
    "GitHubClient",
    "ParsedModule",
    "RateLimitError",
    "RepoFile",
    "SourceControlError",
    "SourceControlProvider",
    "detect_language",
    "detect_module_type",
    "fallback_summary",
    "github_provider_factory",
    "parse_file",
    "parse_repo_name",
    "should_include_file",
]
