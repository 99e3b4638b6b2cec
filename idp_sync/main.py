"""
Main orchestrator for IdP Octelium Sync.

Runs a single sync pass: load the group mapping, fetch users and groups from
the identity provider, filter users, render the Octelium manifests and either
print them (dry run) or write them to disk.
"""

import os
import sys
import logging
import argparse
import tempfile
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable

from idp_sync import __version__
from idp_sync.config import load_config, ConfigurationError
from idp_sync.logging_setup import setup_logging
from idp_sync.mapping import MappingLoader, parse_exclude_patterns, should_exclude_user
from idp_sync.manifests import render_groups, render_users
from idp_sync.providers import create_provider, ProviderError, SUPPORTED_PROVIDERS

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONFIGURATION_ERROR = 2
EXIT_PROVIDER_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_OUTPUT_ERROR = 5


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class OutputError(SyncError):
    """Raised when generated manifests cannot be written."""
    pass


class SyncOrchestrator:
    """
    Coordinates one sync run from the identity provider to manifest files.

    Steps run strictly in order and the first failure aborts the run, so
    nothing is written unless both manifests were rendered.
    """

    def __init__(self, settings: Dict[str, Any], logger: Optional[logging.Logger] = None,
                 provider_factory: Callable = create_provider, stdout=None):
        """
        Initialize sync orchestrator.

        Args:
            settings: Validated settings from load_config()
            logger: Logger for progress reporting; defaults to this module's logger
            provider_factory: Callable building the provider from (type, settings)
            stdout: Stream receiving dry-run output; defaults to sys.stdout
        """
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.provider_factory = provider_factory
        self.stdout = stdout
        self.provider = None

        self.sync_stats = {
            'groups_fetched': 0,
            'users_fetched': 0,
            'users_disabled': 0,
            'users_excluded': 0,
            'users_rendered': 0,
            'groups_rendered': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        self.sync_stats['start_time'] = datetime.now()
        try:
            self._sync()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()
            return EXIT_SUCCESS

        except ConfigurationError as e:
            self.logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except ProviderError as e:
            self.logger.error(f"Provider error: {e}")
            return EXIT_PROVIDER_ERROR
        except OutputError as e:
            self.logger.error(f"Output error: {e}")
            return EXIT_OUTPUT_ERROR
        except Exception as e:
            self.logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _sync(self):
        provider_type = self.settings['provider']
        self.logger.info("Starting sync...")

        mapping_path = self.settings['mapping']
        self.logger.info(f"Loading mapping from: {mapping_path}")
        mapping = MappingLoader.from_file(mapping_path)
        self.logger.info(f"Loaded mapping with {len(mapping.get_defined_groups())} groups defined")

        self.provider = self.provider_factory(provider_type, self.settings)
        self.provider.connect()

        self.logger.info("Fetching groups...")
        groups = self.provider.get_groups()
        self.sync_stats['groups_fetched'] = len(groups)
        self.logger.info(f"Found {len(groups)} groups")

        self.logger.info("Fetching users with group memberships...")
        users = self.provider.get_users_with_groups()
        self.sync_stats['users_fetched'] = len(users)
        self.logger.info(f"Found {len(users)} users")

        exclude_patterns = parse_exclude_patterns(self.settings.get('exclude_users'))
        filtered_users = self._filter_users(users, exclude_patterns)
        self.logger.info(f"{len(filtered_users)} users after filtering")

        self.logger.info("Generating groups manifest...")
        groups_yaml, resolved_groups = render_groups(groups, mapping, provider_type)
        self.sync_stats['groups_rendered'] = len({group['name'] for group in resolved_groups.values()})
        self.logger.info(f"Generated {self.sync_stats['groups_rendered']} groups")

        self.logger.info("Generating users manifest...")
        users_yaml = render_users(filtered_users, resolved_groups, provider_type)
        self.sync_stats['users_rendered'] = len(filtered_users)
        self.logger.info(f"Generated {len(filtered_users)} users")

        if self.settings.get('dry_run'):
            self._print_manifests(groups_yaml, users_yaml)
        else:
            write_manifests([
                (self.settings['output_groups'], groups_yaml),
                (self.settings['output_users'], users_yaml),
            ])
            self.logger.info(f"Wrote {self.settings['output_groups']} and {self.settings['output_users']}")
            self.logger.info("Sync completed successfully")

    def _filter_users(self, users: List[Dict[str, Any]], exclude_patterns: List[str]) -> List[Dict[str, Any]]:
        """Drop disabled users and users matching an exclude pattern."""
        filtered = []
        for user in users:
            if not user.get('enabled', True):
                self.logger.info(f"Skipping disabled user: {user['username']}")
                self.sync_stats['users_disabled'] += 1
                continue
            if should_exclude_user(user['username'], exclude_patterns):
                self.logger.info(f"Skipping excluded user: {user['username']}")
                self.sync_stats['users_excluded'] += 1
                continue
            filtered.append(user)
        return filtered

    def _print_manifests(self, groups_yaml: str, users_yaml: str):
        out = self.stdout or sys.stdout
        out.write("--- DRY RUN: groups.yaml ---\n")
        out.write(groups_yaml)
        out.write("\n--- DRY RUN: users.yaml ---\n")
        out.write(users_yaml)
        out.flush()

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        self.logger.info("=== Sync Summary ===")
        self.logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        self.logger.info(f"Groups fetched: {stats['groups_fetched']}")
        self.logger.info(f"Groups rendered: {stats['groups_rendered']}")
        self.logger.info(f"Users fetched: {stats['users_fetched']}")
        self.logger.info(f"Users skipped (disabled): {stats['users_disabled']}")
        self.logger.info(f"Users skipped (excluded): {stats['users_excluded']}")
        self.logger.info(f"Users rendered: {stats['users_rendered']}")

    def _cleanup(self):
        """Clean up resources."""
        if self.provider:
            self.provider.close_connection()


def _default_file_mode() -> int:
    """Mode a plain open() would give a new file under the current umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def write_manifests(outputs: List[tuple]):
    """
    Write manifest files, staging every document before replacing any target.

    Each document is first written to a temporary file next to its target and
    given the mode a newly created file would get. Targets are only replaced
    once all temporary files are complete, so a failure while staging leaves
    every existing file untouched. A failure during the replace step itself
    can still leave earlier targets replaced.

    Args:
        outputs: List of (path, content) pairs

    Raises:
        OutputError: If any file cannot be written
    """
    file_mode = _default_file_mode()
    staged = []
    try:
        for path, content in outputs:
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile('w', dir=directory, encoding='utf-8',
                                             prefix=f".{os.path.basename(path)}.",
                                             suffix='.tmp', delete=False) as f:
                staged.append((f.name, path))
                f.write(content)
            # NamedTemporaryFile creates files as 0600
            os.chmod(f.name, file_mode)

        for temp_path, path in staged:
            os.replace(temp_path, path)
    except OSError as e:
        for temp_path, _ in staged:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
        raise OutputError(f"Failed to write manifests: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='idp-octelium-sync',
        description='Sync users and groups from Identity Providers to Octelium manifests'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', required=True)
    sync = subparsers.add_parser('sync', help='Sync users and groups from IdP to Octelium YAML manifests')

    sync.add_argument('--provider', help=f"Identity provider type ({', '.join(SUPPORTED_PROVIDERS)})")
    sync.add_argument('--mapping', help='Path to group-mapping.yaml file')
    sync.add_argument('--output-users', help='Output path for users.yaml')
    sync.add_argument('--output-groups', help='Output path for groups.yaml')
    sync.add_argument('--config', '-c', help='Optional YAML settings file')

    keycloak = sync.add_argument_group('Keycloak options')
    keycloak.add_argument('--keycloak-url', help='Keycloak server URL (env KEYCLOAK_URL)')
    keycloak.add_argument('--keycloak-realm', help='Keycloak realm name (env KEYCLOAK_REALM)')
    keycloak.add_argument('--keycloak-client-id', help='Keycloak client ID (env KEYCLOAK_CLIENT_ID)')
    keycloak.add_argument('--keycloak-client-secret',
                          help='Keycloak client secret (env KEYCLOAK_CLIENT_SECRET)')

    sync.add_argument('--exclude-users', help='Comma-separated glob patterns of usernames to exclude')
    sync.add_argument('--dry-run', action='store_true', default=None,
                      help='Print output instead of writing files')
    sync.add_argument('--log-level', help='Log level (DEBUG, INFO, WARNING, ERROR)')
    sync.add_argument('--log-dir', help='Directory for rotated log files')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    cli_options = vars(args)
    config_path = cli_options.pop('config', None)
    cli_options.pop('command', None)

    try:
        settings = load_config(cli_options, config_path)
    except ConfigurationError as e:
        setup_logging({})
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR

    setup_logging(settings['logging'])

    orchestrator = SyncOrchestrator(settings)
    return orchestrator.run()


if __name__ == "__main__":
    sys.exit(main())
