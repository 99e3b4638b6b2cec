"""
Octelium manifest rendering.

Builds ``Group`` and ``User`` resources from resolved groups and filtered users
and serializes them as multi-document YAML. Output depends only on the inputs,
so regenerated manifests diff cleanly in version control.
"""

from typing import Dict, List, Any, Tuple

import yaml

GENERATOR_NAME = 'idp-octelium-sync'


def _header(kind: str, provider_name: str) -> str:
    return (f"# Octelium {kind} generated by {GENERATOR_NAME} from {provider_name}.\n"
            f"# Do not edit manually; changes are overwritten on the next sync.\n")


def _dump(resources: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(
        resources,
        sort_keys=False,
        default_flow_style=False,
        explicit_start=True,
        allow_unicode=True
    )


def build_group_resource(idp_group_name: str, resolved: Dict[str, Any],
                         provider_name: str) -> Dict[str, Any]:
    """Build a single Octelium Group resource."""
    spec = {}
    if resolved['policies']:
        spec['authorization'] = {'policies': list(resolved['policies'])}
    spec['attrs'] = {
        'idpGroup': idp_group_name,
        'idpProvider': provider_name,
    }

    return {
        'kind': 'Group',
        'metadata': {
            'name': resolved['name'],
            'displayName': resolved['display_name'],
        },
        'spec': spec,
    }


def build_user_resource(user: Dict[str, Any], group_names: List[str],
                        provider_name: str) -> Dict[str, Any]:
    """Build a single Octelium User resource."""
    spec = {'type': 'HUMAN'}
    if user.get('email'):
        spec['email'] = user['email']
    if group_names:
        spec['groups'] = group_names

    attrs = {}
    if user.get('first_name'):
        attrs['firstName'] = user['first_name']
    if user.get('last_name'):
        attrs['lastName'] = user['last_name']
    attrs['idpProvider'] = provider_name
    spec['attrs'] = attrs

    return {
        'kind': 'User',
        'metadata': {'name': user['username']},
        'spec': spec,
    }


def render_groups(groups: List[Dict[str, Any]], mapping,
                  provider_name: str) -> Tuple[str, Dict[str, Dict[str, Any]]]:
    """
    Render the groups manifest.

    Args:
        groups: Raw groups from the provider, each with at least a ``name``
        mapping: MappingLoader used to resolve each group
        provider_name: Provider name recorded in resource attributes

    Returns:
        Tuple of (YAML document, resolved groups keyed by IdP group name).
        Skipped groups are absent from both.
    """
    resolved_groups = {}
    resources = []
    emitted_names = set()

    for group in groups:
        idp_group_name = group['name']
        if idp_group_name in resolved_groups:
            continue

        resolved = mapping.resolve_group(idp_group_name)
        if resolved is None:
            continue

        resolved_groups[idp_group_name] = resolved

        # Several IdP groups may map onto one Octelium group; the first one defines it
        if resolved['name'] in emitted_names:
            continue
        emitted_names.add(resolved['name'])
        resources.append(build_group_resource(idp_group_name, resolved, provider_name))

    return _header('groups', provider_name) + _dump(resources), resolved_groups


def translate_user_groups(idp_group_names: List[str],
                          resolved_groups: Dict[str, Dict[str, Any]]) -> List[str]:
    """Map IdP group names to Octelium group names, dropping unresolved groups."""
    group_names = []
    for idp_group_name in idp_group_names:
        resolved = resolved_groups.get(idp_group_name)
        if resolved is None:
            continue
        if resolved['name'] not in group_names:
            group_names.append(resolved['name'])
    return group_names


def render_users(users: List[Dict[str, Any]], resolved_groups: Dict[str, Dict[str, Any]],
                 provider_name: str) -> str:
    """
    Render the users manifest.

    Every user is rendered as a HUMAN identity. Group memberships are
    translated through ``resolved_groups``; memberships of skipped groups
    never appear in the output.
    """
    resources = []
    for user in users:
        group_names = translate_user_groups(user.get('groups', []), resolved_groups)
        resources.append(build_user_resource(user, group_names, provider_name))

    return _header('users', provider_name) + _dump(resources)
