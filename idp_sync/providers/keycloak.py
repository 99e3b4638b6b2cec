"""
Keycloak identity provider.

Talks to the Keycloak Admin REST API with a service-account client using the
OAuth2 client credentials grant.
"""

import logging
from typing import Dict, List, Any, Optional
from urllib.parse import quote

from .base import IdentityProviderBase, ProviderError, ProviderConnectionError

logger = logging.getLogger(__name__)


class KeycloakProvider(IdentityProviderBase):
    """
    Keycloak Admin API client.

    Required configuration: ``url``, ``realm``, ``client_id``, ``client_secret``.
    The client needs the ``view-users`` role of the realm-management client.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__('Keycloak', config['url'], config)

        self.realm = config['realm']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.page_size = int(config.get('page_size', 100))

        self.token_url = f"{self.base_url}/realms/{quote(self.realm, safe='')}/protocol/openid-connect/token"
        self.admin_path = f"/admin/realms/{quote(self.realm, safe='')}"

    def connect(self):
        try:
            self._oauth2_get_token(self.token_url, self.client_id, self.client_secret)
        except ProviderError as e:
            raise ProviderConnectionError(f"Failed to connect to Keycloak: {e}")

        self.connected = True
        logger.info(f"Connected to Keycloak at {self.base_url}, realm: {self.realm}")

    def _refresh_token(self) -> bool:
        # Service-account tokens are short lived; a long member listing can outlast one
        if not self.connected:
            return False
        logger.info("Access token rejected, requesting a new one from Keycloak")
        self._oauth2_get_token(self.token_url, self.client_id, self.client_secret)
        return True

    def _get_paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every page of a listing endpoint using first/max paging."""
        results = []
        first = 0
        while True:
            page_params = dict(params or {})
            page_params.update({'first': first, 'max': self.page_size})

            page = self.request('GET', f"{self.admin_path}{path}", page_params) or []
            results.extend(page)

            if len(page) < self.page_size:
                return results
            first += self.page_size

    @staticmethod
    def _normalize_user(user: Dict[str, Any]) -> Dict[str, Any]:
        enabled = user.get('enabled')
        return {
            'id': user['id'],
            'username': user['username'],
            'email': user.get('email') or '',
            'enabled': True if enabled is None else bool(enabled),
            'first_name': user.get('firstName'),
            'last_name': user.get('lastName'),
        }

    def get_users(self) -> List[Dict[str, Any]]:
        self.ensure_connected()

        users = self._get_paged('/users', {'briefRepresentation': 'false'})
        logger.debug(f"Retrieved {len(users)} users from realm {self.realm}")
        return [self._normalize_user(user) for user in users]

    def get_groups(self) -> List[Dict[str, Any]]:
        """Get all groups, flattening sub-groups depth first after their parent."""
        self.ensure_connected()

        groups = self._get_paged('/groups', {'briefRepresentation': 'false'})
        return self._flatten_groups(groups, [])

    def _flatten_groups(self, groups: List[Dict[str, Any]], result: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for group in groups:
            result.append({
                'id': group['id'],
                'name': group['name'],
                'path': group.get('path'),
            })

            sub_groups = group.get('subGroups') or []
            # Keycloak 23+ leaves subGroups empty in listings and reports a count instead
            if not sub_groups and group.get('subGroupCount'):
                sub_groups = self._get_paged(f"/groups/{quote(group['id'], safe='')}/children",
                                             {'briefRepresentation': 'false'})
            if sub_groups:
                self._flatten_groups(sub_groups, result)
        return result

    def get_group_members(self, group_id: str) -> List[Dict[str, Any]]:
        self.ensure_connected()

        members = self._get_paged(f"/groups/{quote(group_id, safe='')}/members",
                                  {'briefRepresentation': 'false'})
        return [self._normalize_user(member) for member in members]
