"""
Rule group resolver for pcc-flap-guard

Maps a routing table name to the PCC mangle rules that carry its traffic.

A table name is normalized into a match key by stripping one trailing
marker character. A member belongs to the route when its group tag is in
the known tag set (collected once per pass) and its connection mark
contains the match key.
"""

from typing import List, Tuple

from .routeros import RouterOSClient


def match_key(table: str, marker: str) -> str:
    """Strip a single trailing marker character from a table name."""
    if marker and table.endswith(marker):
        return table[:-len(marker)]
    return table


class RuleGroupResolver:
    """
    Resolves routes to PCC rule group members.

    Call refresh_tags() once at the start of each pass; find_members() then
    answers enabled-only or disabled-only queries against that tag set.
    """

    def __init__(self, router: RouterOSClient, plugin, keyword: str = 'PCC', marker: str = '~'):
        self.router = router
        self.plugin = plugin
        self.keyword = keyword
        self.marker = marker
        self.tags: List[str] = []

    def refresh_tags(self) -> List[str]:
        """
        Collect the distinct group tags of all connection-marking rules.

        Order of first discovery is kept so rebalancing is reproducible.
        """
        seen = set()
        tags = []
        for _rule_id, comment in self.router.list_connection_marking_rules():
            if self.keyword not in comment or comment in seen:
                continue
            seen.add(comment)
            tags.append(comment)
        self.tags = tags
        self.plugin.log(f"RESOLVER: {len(tags)} PCC groups known: {', '.join(tags) or '-'}", level='debug')
        return tags

    def find_members(self, table: str, enabled: bool) -> List[Tuple[str, str]]:
        """
        Find the members of every known group that serve this route.

        Args:
            table: Routing table name of the route
            enabled: True for currently enabled members, False for disabled

        Returns:
            List of (tag, rule_id) in tag then table order
        """
        key = match_key(table, self.marker)
        if not key:
            return []
        members = []
        for tag in self.tags:
            for rule_id in self.router.list_group_members(tag, enabled, key):
                members.append((tag, rule_id))
        return members
