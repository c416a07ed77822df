"""Change-set calculation between the live and the candidate configuration.

Entries are ordered the way they would be carried out: deletions first,
then replacements, then in-place modifications, then creations.
"""
from typing import Optional

from ..config.schema import Interface, NetworkConfiguration
from .schema import ChangeType, ConfigChange

_ORDER = [ChangeType.DELETE, ChangeType.UPDATE, ChangeType.MODIFY, ChangeType.CREATE]


class DiffEngine:
    """Calculate differences between two configurations."""

    def calculate(
        self,
        current: NetworkConfiguration,
        desired: NetworkConfiguration,
    ) -> list[ConfigChange]:
        """
        Calculate the change-set that turns ``current`` into ``desired``.

        Args:
            current: Live configuration
            desired: Candidate configuration

        Returns:
            Ordered list of ConfigChange; empty when nothing differs
        """
        current_map = _by_name(current)
        desired_map = _by_name(desired)
        buckets: dict[ChangeType, list[ConfigChange]] = {t: [] for t in _ORDER}

        for name, old in current_map.items():
            if name not in desired_map:
                buckets[ChangeType.DELETE].append(ConfigChange(
                    change_type=ChangeType.DELETE,
                    target=name,
                    description=f"Remove {old.kind.kind} {name}",
                    old_config=old.to_dict(),
                ))

        for name, new in desired_map.items():
            old = current_map.get(name)
            if old is None:
                buckets[ChangeType.CREATE].append(ConfigChange(
                    change_type=ChangeType.CREATE,
                    target=name,
                    description=f"Create {new.kind.kind} {name}",
                    new_config=new.to_dict(),
                ))
                continue

            change = self._diff_interface(name, old, new, current, desired)
            if change:
                buckets[change.change_type].append(change)

        return [change for t in _ORDER for change in buckets[t]]

    def _diff_interface(
        self,
        name: str,
        old: Interface,
        new: Interface,
        current: NetworkConfiguration,
        desired: NetworkConfiguration,
    ) -> Optional[ConfigChange]:
        """
        Compare one interface present on both sides.

        Returns None if no changes needed.
        """
        old_dict = old.to_dict()
        new_dict = new.to_dict()

        if old.kind.kind != new.kind.kind:
            return ConfigChange(
                change_type=ChangeType.UPDATE,
                target=name,
                description=f"Replace {old.kind.kind} {name} with {new.kind.kind}",
                old_config=old_dict,
                new_config=new_dict,
                fields=["kind"],
            )

        changed = [key for key in new_dict if key != "name" and old_dict.get(key) != new_dict[key]]
        for start_list in ("auto", "hotplug"):
            if (name in getattr(current, start_list)) != (name in getattr(desired, start_list)):
                changed.append(start_list)

        if not changed:
            return None

        return ConfigChange(
            change_type=ChangeType.MODIFY,
            target=name,
            description=f"Modify {new.kind.kind} {name}: {', '.join(changed)}",
            old_config=old_dict,
            new_config=new_dict,
            fields=changed,
        )


def _by_name(config: NetworkConfiguration) -> dict[str, Interface]:
    result: dict[str, Interface] = {}
    for iface in config.interfaces:
        result.setdefault(iface.name, iface)
    return result


def summarize_changes(changes: list[ConfigChange]) -> str:
    """
    Create a human-readable summary of a change-set.

    Useful for dry-run output and logging.
    """
    if not changes:
        return "No changes needed - live configuration matches candidate"

    markers = {
        ChangeType.CREATE: "[+]",
        ChangeType.DELETE: "[-]",
        ChangeType.UPDATE: "[!]",
        ChangeType.MODIFY: "[~]",
    }
    lines = [f"Changes to apply ({len(changes)} total):", ""]
    for change in changes:
        lines.append(f"  {markers[change.change_type]} {change.description}")
        if change.change_type == ChangeType.MODIFY:
            for key in change.fields:
                before = (change.old_config or {}).get(key)
                after = (change.new_config or {}).get(key)
                if key in ("auto", "hotplug"):
                    continue
                lines.append(f"      {key}: {before!r} -> {after!r}")
    return "\n".join(lines)
