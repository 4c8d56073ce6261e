"""Map a target request rate to a k6 container resource tier."""

from k6runner.models import ResourceTier

LOW = ResourceTier("low", cpu_request="100m", memory_request="256Mi",
                   cpu_limit="500m", memory_limit="1Gi")
MEDIUM = ResourceTier("medium", cpu_request="200m", memory_request="512Mi",
                      cpu_limit="1000m", memory_limit="2Gi")
HIGH = ResourceTier("high", cpu_request="500m", memory_request="1Gi",
                    cpu_limit="2000m", memory_limit="4Gi")

TIERS = (LOW, MEDIUM, HIGH)

LOW_MAX_RPS = 50
MEDIUM_MAX_RPS = 500


def resolve_tier(rate: int) -> ResourceTier:
    if rate <= LOW_MAX_RPS:
        return LOW
    if rate <= MEDIUM_MAX_RPS:
        return MEDIUM
    return HIGH
