"""
Error taxonomy for kubetier.

Every failure surfaced to the caller derives from KubetierError and keeps its
structured context (field name, old/new value, file path, HTTP status) as
attributes, so tests and callers can match on more than the message text.

Hierarchy:
- ResolutionError: configuration layers could not be combined
- ValidationError: the resolved ClusterSpec breaks a constraint
- MergeError: a pod template could not be overlaid on a builder fragment
- ClusterNotFound / AlreadyExists: create-vs-update preconditions
- ApiError: a Kubernetes API call failed (not-found, permission, transient)
- CommandTimeout: the invocation ran past the caller's deadline
"""

from typing import Any, Dict, Iterable, Optional


class KubetierError(Exception):
    """Base class for all kubetier errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Resolution
# =============================================================================

class ResolutionError(KubetierError):
    """Raised when configuration layers cannot be resolved into a ClusterSpec."""
    pass


class UnknownOverrideKey(ResolutionError):
    """An override key has no mapping onto a ClusterSpec field."""

    def __init__(self, key: str, layer: str = "dynamic"):
        super().__init__(f"Unknown {layer} override key: {key}", key=key, layer=layer)
        self.key = key
        self.layer = layer


class MalformedOverride(ResolutionError):
    """An override entry or value could not be parsed."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            f"Malformed override {key}={value!r}: {reason}",
            key=key, value=value, reason=reason
        )
        self.key = key
        self.value = value
        self.reason = reason


class ConfigFileError(ResolutionError):
    """The base configuration file is unreadable or not a YAML mapping."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot load config file {path}: {reason}", path=path, reason=reason)
        self.path = path
        self.reason = reason


# =============================================================================
# Validation
# =============================================================================

class ValidationError(KubetierError):
    """Raised when a resolved ClusterSpec violates a constraint."""
    pass


class ImmutableFieldError(ValidationError):
    """An update tried to change a field that is fixed at creation."""

    def __init__(self, field: str, old: Any, new: Any, plan: Any = None):
        super().__init__(
            f"Field {field} is immutable (live: {old!r}, requested: {new!r})",
            field=field, old=old, new=new
        )
        self.field = field
        self.old = old
        self.new = new
        self.plan = plan


class InvalidEnumValue(ValidationError):
    """A field holds a value outside its allowed set."""

    def __init__(self, field: str, value: Any, allowed: Iterable[Any], message: Optional[str] = None):
        allowed = tuple(allowed)
        super().__init__(
            message or f"Invalid value {value!r} for {field}; allowed: {', '.join(map(str, allowed))}",
            field=field, value=value, allowed=allowed
        )
        self.field = field
        self.value = value
        self.allowed = allowed


class ReplicaParityError(InvalidEnumValue):
    """master.replicas must be a positive odd number for the journal quorum."""

    def __init__(self, field: str, value: Any):
        super().__init__(
            field, value, ("1", "3", "5", "..."),
            message=f"{field} must be a positive odd integer for quorum (got {value!r})"
        )


class InvalidResourceQuantity(ValidationError):
    """A cpu/memory/storage quantity does not parse as a positive quantity."""

    def __init__(self, field: str, value: Any):
        super().__init__(
            f"Invalid resource quantity for {field}: {value!r}",
            field=field, value=value
        )
        self.field = field
        self.value = value


class InvalidClusterId(ValidationError):
    """cluster_id does not satisfy the Kubernetes resource-name grammar."""

    def __init__(self, cluster_id: str, reason: str):
        super().__init__(f"Invalid cluster_id {cluster_id!r}: {reason}", cluster_id=cluster_id, reason=reason)
        self.cluster_id = cluster_id
        self.reason = reason


class ContainerNameMismatch(ValidationError):
    """A pod template does not contain the tier's expected container."""

    def __init__(self, tier: str, expected: str, found: Iterable[str]):
        found = tuple(found)
        super().__init__(
            f"Pod template for {tier} must define container {expected!r} (found: {', '.join(found) or 'none'})",
            tier=tier, expected=expected, found=found
        )
        self.tier = tier
        self.expected = expected
        self.found = found


class InvalidFieldValue(ValidationError):
    """A field value is out of range or badly formatted."""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(f"Invalid value for {field} ({value!r}): {reason}", field=field, value=value, reason=reason)
        self.field = field
        self.value = value
        self.reason = reason


# =============================================================================
# Merge
# =============================================================================

class MergeError(KubetierError):
    """Raised when a pod template cannot be merged into a builder fragment."""
    pass


class MountPathMismatch(MergeError):
    """Builder and template mount the same volume at different paths."""

    def __init__(self, name: str, builder_path: str, patch_path: str):
        super().__init__(
            f"Volume mount {name!r} is mounted at {builder_path} but the pod template uses {patch_path}",
            name=name, builder_path=builder_path, patch_path=patch_path
        )
        self.name = name
        self.builder_path = builder_path
        self.patch_path = patch_path


class DisallowedContainer(MergeError):
    """A pod template introduces a container other than the tier's own."""

    def __init__(self, tier: str, name: str):
        super().__init__(
            f"Pod template for {tier} may only define container {tier!r}, found {name!r}",
            tier=tier, name=name
        )
        self.tier = tier
        self.name = name


class TemplateError(MergeError):
    """A pod template file is unreadable or not a valid pod specification."""

    def __init__(self, path: Optional[str], reason: str):
        super().__init__(f"Invalid pod template {path or '<inline>'}: {reason}", path=path, reason=reason)
        self.path = path
        self.reason = reason


# =============================================================================
# Cluster state
# =============================================================================

class ClusterNotFound(KubetierError):
    """No resources of the named cluster exist in the namespace."""

    def __init__(self, cluster_id: str, namespace: str):
        super().__init__(
            f"Cluster {cluster_id!r} not found in namespace {namespace!r}",
            cluster_id=cluster_id, namespace=namespace
        )
        self.cluster_id = cluster_id
        self.namespace = namespace


class AlreadyExists(KubetierError):
    """A resource the deploy path wants to create already exists."""

    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(
            f"{kind} {name!r} already exists in namespace {namespace!r}; use update instead",
            kind=kind, name=name, namespace=namespace
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ReadinessError(KubetierError):
    """A StatefulSet failed while waiting for its pods to become ready."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"{name} did not become ready: {reason}", name=name, reason=reason)
        self.name = name
        self.reason = reason


class CommandTimeout(KubetierError):
    """The invocation exceeded the caller-supplied timeout."""

    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds:g}s", operation=operation, seconds=seconds)
        self.operation = operation
        self.seconds = seconds


class PatchConflict(KubetierError):
    """A planned JSON patch does not apply to the live resource document."""

    def __init__(self, kind: str, name: str, reason: str):
        super().__init__(f"Patch for {kind} {name!r} does not apply: {reason}", kind=kind, name=name, reason=reason)
        self.kind = kind
        self.name = name
        self.reason = reason


class KubeConfigError(KubetierError):
    """Neither in-cluster config nor a kubeconfig could be loaded."""
    pass


# =============================================================================
# Kubernetes API
# =============================================================================

class ApiError(KubetierError):
    """A Kubernetes API call failed."""

    def __init__(
        self,
        operation: str,
        kind: str,
        name: Optional[str],
        status: Optional[int],
        reason: str
    ):
        target = f"{kind} {name}" if name else kind
        super().__init__(
            f"{operation} {target} failed ({status or 'no status'}): {reason}",
            operation=operation, kind=kind, name=name, status=status, reason=reason
        )
        self.operation = operation
        self.kind = kind
        self.name = name
        self.status = status
        self.reason = reason

    @classmethod
    def from_exception(cls, exc: Exception, operation: str, kind: str, name: Optional[str] = None) -> "ApiError":
        """
        Classify a client failure into the ApiError hierarchy.

        Args:
            exc: ApiException (carries .status/.reason) or a transport error
            operation: Verb being performed (create, patch, ...)
            kind: Resource kind
            name: Resource name, if any

        Returns:
            ApiNotFound, ApiPermissionDenied, ApiTransientError or ApiError
        """
        status = getattr(exc, "status", None)
        reason = getattr(exc, "reason", None) or str(exc)

        if status == 404:
            error_cls = ApiNotFound
        elif status in (401, 403):
            error_cls = ApiPermissionDenied
        elif not status or status in (408, 429) or status >= 500:
            error_cls = ApiTransientError
        else:
            error_cls = ApiError
        return error_cls(operation, kind, name, status or None, reason)


class ApiNotFound(ApiError):
    """The API reported 404."""
    pass


class ApiPermissionDenied(ApiError):
    """The API rejected the credentials (401/403)."""
    pass


class ApiTransientError(ApiError):
    """Timeouts, throttling, server errors and connection failures."""
    pass
