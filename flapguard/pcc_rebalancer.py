"""
PCC Rebalancer module for pcc-flap-guard

After a pass that enabled or disabled members, the per-connection-classifier
fractions of each affected group are recomputed so that exactly the enabled
members split the connection space:

    N enabled members  ->  type:N/0, type:N/1, ..., type:N/(N-1)

Each member keeps its classifier type (both-addresses, src-address, ...);
only the fraction is replaced. A gap in the fraction space would silently
drop a share of new connections, an overlap would double-count a path.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .routeros import RouterOSClient, RouterOSError

DEFAULT_CLASSIFIER_TYPE = "both-addresses"


def split_classifier(value: str) -> Tuple[str, Optional[Tuple[int, int]]]:
    """
    Split 'type:denominator/remainder' into its type and fraction.

    The fraction is None when it is missing or unparseable.
    """
    kind, sep, fraction = (value or "").rpartition(":")
    if not sep:
        return (value or DEFAULT_CLASSIFIER_TYPE), None
    denominator, slash, remainder = fraction.partition("/")
    try:
        if not slash:
            raise ValueError(fraction)
        return kind, (int(denominator), int(remainder))
    except ValueError:
        return kind, None


def format_classifier(kind: str, denominator: int, remainder: int) -> str:
    return f"{kind}:{denominator}/{remainder}"


@dataclass
class RebalanceResult:
    """Outcome of rebalancing one group."""
    tag: str
    members: int = 0
    updated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        """True when every enabled member now carries its fraction."""
        return self.error is None and not self.failed

    def to_dict(self):
        return {
            "tag": self.tag,
            "members": self.members,
            "updated": self.updated,
            "failed": self.failed,
            "error": self.error,
        }


class PccRebalancer:
    """Re-partitions the classifier fractions of one PCC group at a time."""

    def __init__(self, router: RouterOSClient, plugin):
        self.router = router
        self.plugin = plugin

    def rebalance(self, tag: str) -> RebalanceResult:
        """
        Assign type:N/i to the i-th enabled member of a group.

        Members already carrying the right value are not rewritten. Router
        errors are logged and reported in the result (see complete) so the
        caller can retry the group on a later pass.
        """
        result = RebalanceResult(tag=tag)
        try:
            members = self.router.list_group_members(tag, True)
        except RouterOSError as e:
            result.error = str(e)
            self.plugin.log(f"REBALANCE: Could not list members of '{tag}': {e}", level='warn')
            return result
        result.members = len(members)

        if not members:
            self.plugin.log(
                f"REBALANCE: Group '{tag}' has no enabled members; every path is out of rotation",
                level='warn'
            )
            return result

        n = len(members)
        for index, rule_id in enumerate(members):
            try:
                current = self.router.get_classifier(rule_id)
                kind, _ = split_classifier(current)
                wanted = format_classifier(kind, n, index)
                if current == wanted:
                    continue
                self.router.set_classifier(rule_id, wanted)
                result.updated.append(rule_id)
                self.plugin.log(f"REBALANCE: {tag} {rule_id}: {current or '-'} -> {wanted}", level='debug')
            except RouterOSError as e:
                result.failed.append(rule_id)
                self.plugin.log(f"REBALANCE: Failed to update {rule_id} in '{tag}': {e}", level='warn')

        self.plugin.log(
            f"REBALANCE: Group '{tag}' split across {n} members "
            f"({len(result.updated)} updated, {len(result.failed)} failed)"
        )
        return result
