"""
Group mapping and user filtering for IdP Octelium Sync.

The mapping document translates IdP group names into Octelium group names and
policies. Resolution is a pure lookup and never touches the network.
"""

import logging
from enum import Enum
from fnmatch import fnmatchcase
from typing import Dict, List, Any, Optional, Iterable

import yaml

from idp_sync.config import ConfigurationError

logger = logging.getLogger(__name__)


class MappingError(ConfigurationError):
    """Raised when the group mapping document is missing or malformed."""
    pass


class UnmappedGroupPolicy(str, Enum):
    """What to do with IdP groups that have no entry in the mapping."""
    SKIP = "skip"
    INCLUDE = "include"
    INCLUDE_NO_POLICIES = "include-no-policies"


class MappingLoader:
    """
    Resolves IdP group names against an operator-supplied mapping.

    The mapping document has a required ``groups`` table keyed by IdP group name
    and an optional ``defaults`` block::

        groups:
          admins:
            octeliumGroup: administrators
            displayName: Administrators
            policies: [admin-policy]
          legacy:
            sync: false
        defaults:
          unmappedGroups: skip
          defaultPolicies: [baseline]
    """

    def __init__(self, mapping: Dict[str, Any]):
        if not isinstance(mapping, dict) or not isinstance(mapping.get('groups'), dict):
            raise MappingError("Invalid mapping file: missing 'groups' key")

        self.groups = mapping['groups']
        for group_name, entry in self.groups.items():
            self._validate_entry(group_name, entry)

        defaults = mapping.get('defaults')
        if defaults is None:
            defaults = {}
        elif not isinstance(defaults, dict):
            raise MappingError("Invalid mapping file: 'defaults' must be a mapping")

        self.unmapped_groups = defaults.get('unmappedGroups', UnmappedGroupPolicy.SKIP.value)
        if not isinstance(self.unmapped_groups, str):
            raise MappingError("Invalid mapping file: 'defaults.unmappedGroups' must be a string")

        default_policies = defaults.get('defaultPolicies')
        if default_policies is not None and not self._is_string_list(default_policies):
            raise MappingError("Invalid mapping file: 'defaults.defaultPolicies' must be a list of strings")
        self.default_policies = list(default_policies or [])

        if self.unmapped_groups not in {policy.value for policy in UnmappedGroupPolicy}:
            logger.warning(f"Unrecognized unmappedGroups value '{self.unmapped_groups}', "
                           f"unmapped groups will be skipped")

    @staticmethod
    def _is_string_list(value: Any) -> bool:
        return isinstance(value, list) and all(isinstance(item, str) for item in value)

    def _validate_entry(self, group_name: str, entry: Any):
        """Check the shape of one group entry; YAML null counts as an empty entry."""
        if entry is None:
            return
        if not isinstance(entry, dict):
            raise MappingError(f"Invalid mapping for group '{group_name}': entry must be a mapping")

        for field in ('octeliumGroup', 'displayName'):
            value = entry.get(field)
            if value is not None and not isinstance(value, str):
                raise MappingError(f"Invalid mapping for group '{group_name}': '{field}' must be a string")

        policies = entry.get('policies')
        if policies is not None and not self._is_string_list(policies):
            raise MappingError(f"Invalid mapping for group '{group_name}': 'policies' must be a list of strings")

        sync = entry.get('sync')
        if sync is not None and not isinstance(sync, bool):
            raise MappingError(f"Invalid mapping for group '{group_name}': 'sync' must be true or false")

    @classmethod
    def from_file(cls, file_path: str) -> 'MappingLoader':
        """
        Load a mapping from a YAML file.

        Raises:
            MappingError: If the file cannot be read or is not a valid mapping
        """
        try:
            with open(file_path, 'r') as f:
                mapping = yaml.safe_load(f)
        except FileNotFoundError:
            raise MappingError(f"Mapping file not found: {file_path}")
        except yaml.YAMLError as e:
            raise MappingError(f"Invalid YAML in mapping file {file_path}: {e}")

        return cls(mapping)

    def resolve_group(self, idp_group_name: str) -> Optional[Dict[str, Any]]:
        """
        Resolve an IdP group to its Octelium name and policies.

        Returns:
            Resolved group dictionary with ``name``, ``display_name``, ``policies``
            and ``sync`` keys, or None if the group should be skipped
        """
        if idp_group_name in self.groups:
            entry = self.groups[idp_group_name] or {}

            if entry.get('sync') is False:
                return None

            policies = entry.get('policies')
            return {
                'name': entry.get('octeliumGroup') or idp_group_name,
                'display_name': entry.get('displayName') or idp_group_name,
                'policies': list(policies if policies is not None else self.default_policies),
                'sync': True,
            }

        if self.unmapped_groups == UnmappedGroupPolicy.SKIP:
            return None
        elif self.unmapped_groups == UnmappedGroupPolicy.INCLUDE:
            return {
                'name': idp_group_name,
                'display_name': idp_group_name,
                'policies': list(self.default_policies),
                'sync': True,
            }
        elif self.unmapped_groups == UnmappedGroupPolicy.INCLUDE_NO_POLICIES:
            return {
                'name': idp_group_name,
                'display_name': idp_group_name,
                'policies': [],
                'sync': True,
            }
        else:
            return None

    def get_defined_groups(self) -> List[str]:
        """Get all groups explicitly listed in the mapping."""
        return list(self.groups.keys())


def parse_exclude_patterns(value: Optional[str]) -> List[str]:
    """Split a comma-separated pattern list, dropping blanks."""
    if not value:
        return []
    return [pattern.strip() for pattern in value.split(',') if pattern.strip()]


def should_exclude_user(username: str, exclude_patterns: Iterable[str]) -> bool:
    """Return True if the username matches any shell-style exclude pattern."""
    for pattern in exclude_patterns:
        if fnmatchcase(username, pattern):
            return True
    return False
