"""
Main orchestrator for LDAP Reconciler application.

This module loads the declared directory objects from configuration, connects
to the directory and reconciles every object, logging a summary of what was
created, updated and deleted.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

from ldap_reconciler.config import load_config, ConfigurationError
from ldap_reconciler.controller import ObjectReconciler
from ldap_reconciler.ldap_client import LDAPClient, LDAPConnectionError
from ldap_reconciler.logging_setup import setup_logging
from ldap_reconciler.models import DirectoryObject
from ldap_reconciler.operations import AddOperation, DeleteOperation

logger = logging.getLogger(__name__)


class ReconcileOrchestrator:
    """
    Main orchestrator for reconciling declared objects with the directory.

    One failing object does not stop the others; failures are counted and
    reflected in the exit code.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize reconcile orchestrator.

        Args:
            config_path: Path to configuration file
        """
        self.config = None
        self.ldap_client = None
        self.config_path = config_path

        self.stats = {
            'objects_created': 0,
            'objects_updated': 0,
            'objects_unchanged': 0,
            'objects_deleted': 0,
            'objects_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'object_details': {}
        }

    def run(self, dry_run: bool = False) -> int:
        """
        Run the complete reconciliation.

        Args:
            dry_run: Only log the operations that would be sent

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info(f"Starting LDAP reconciliation{' (dry run)' if dry_run else ''}")

            self._connect_ldap()
            self._process_objects(dry_run)

            self.stats['end_time'] = datetime.now()
            self.stats['runtime_seconds'] = (
                self.stats['end_time'] - self.stats['start_time']
            ).total_seconds()

            self._log_summary()

            if self.stats['objects_failed'] > 0:
                logger.warning(f"Reconciliation completed with {self.stats['objects_failed']} object failures")
                return 1
            logger.info("Reconciliation completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_ldap(self):
        """Establish LDAP connection."""
        error_config = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(self.config['ldap'])

        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _reconciler(self) -> ObjectReconciler:
        return ObjectReconciler(
            self.ldap_client,
            invalid_attribute_values=self.config.get('invalid_attribute_values', []),
            require_cn=self.config.get('require_cn', True),
            logger=logging.getLogger('ldap_reconciler.controller'),
        )

    def _process_objects(self, dry_run: bool):
        """Reconcile every declared object."""
        reconciler = self._reconciler()

        for declaration in self.config.get('objects', []):
            dn = declaration.get('dn', 'unknown')
            try:
                if declaration.get('state', 'present') == 'absent':
                    outcome = self._remove_object(reconciler, dn, dry_run)
                else:
                    desired = DirectoryObject.from_dict(
                        {key: value for key, value in declaration.items() if key != 'state'}
                    )
                    outcome = self._apply_object(reconciler, desired, dry_run)
            except Exception as e:
                outcome = 'failed'
                logger.error(f"Failed to reconcile object {dn}: {e}")

            self.stats[f"objects_{outcome}"] += 1
            self.stats['object_details'][dn] = outcome

    def _apply_object(self, reconciler: ObjectReconciler, desired: DirectoryObject, dry_run: bool) -> str:
        operations = reconciler.reconcile(desired, dry_run=dry_run)
        if not operations:
            logger.info(f"Object {desired.dn} is up to date")
            return 'unchanged'

        for operation in operations:
            self._log_operation(operation)
        return 'created' if isinstance(operations[0], AddOperation) else 'updated'

    def _remove_object(self, reconciler: ObjectReconciler, dn: str, dry_run: bool) -> str:
        operations = reconciler.plan_removal(dn)
        for operation in operations:
            self._log_operation(operation)
        if operations and not dry_run:
            reconciler.delete(dn)
        return 'deleted' if operations else 'unchanged'

    def _log_operation(self, operation):
        if isinstance(operation, AddOperation):
            logger.info(f"Add {operation.dn}")
            for name, values in operation.attributes.items():
                logger.info(f"  + {name}: {values}")
        elif isinstance(operation, DeleteOperation):
            logger.info(f"Delete {operation.dn}")
        else:
            logger.info(f"Modify {operation.dn}")
            for change in operation.changes:
                logger.info(f"  {change.operation.name} {change.name}: {list(change.values)}")

    def import_object(self, dn: str) -> Optional[Dict[str, Any]]:
        """
        Read an existing object and return its normalized state.

        Returns:
            Declaration-shaped dictionary, or None when the entry does not exist
        """
        try:
            self._load_configuration()
            self._connect_ldap()
            obj = self._reconciler().import_object(dn)
            return obj.to_dict() if obj is not None else None
        finally:
            self._cleanup()

    def _log_summary(self):
        """Log final reconciliation statistics."""
        stats = self.stats

        logger.info("=== Reconciliation Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Objects created: {stats['objects_created']}")
        logger.info(f"Objects updated: {stats['objects_updated']}")
        logger.info(f"Objects unchanged: {stats['objects_unchanged']}")
        logger.info(f"Objects deleted: {stats['objects_deleted']}")
        logger.info(f"Objects failed: {stats['objects_failed']}")

        for dn, outcome in stats['object_details'].items():
            logger.debug(f"  {dn}: {outcome}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration and directory connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if self.config:
            try:
                test_client = LDAPClient(self.config['ldap'])
                test_client.connect(max_retries=1, retry_wait=1)
                test_client.disconnect()

                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            except Exception as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

            declarations: List[Dict[str, Any]] = self.config.get('objects', [])
            object_checks = {}
            for declaration in declarations:
                dn = declaration.get('dn', 'unknown')
                try:
                    if declaration.get('state', 'present') == 'present':
                        DirectoryObject.from_dict({k: v for k, v in declaration.items() if k != 'state'})
                    object_checks[dn] = {'status': 'pass', 'message': 'Declaration is valid'}
                except Exception as e:
                    object_checks[dn] = {'status': 'fail', 'message': f'Invalid declaration: {e}'}
                    health_status['status'] = 'unhealthy'
            health_status['checks']['objects'] = object_checks

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='LDAP Reconciler Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Log the operations that would be sent without sending them')
    parser.add_argument('--import', dest='import_dn', metavar='DN',
                        help='Print the normalized state of an existing object')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of reconciling')

    args = parser.parse_args()

    orchestrator = ReconcileOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.import_dn:
        try:
            state = orchestrator.import_object(args.import_dn)
        except Exception as e:
            print(f"Error importing {args.import_dn}: {e}")
            sys.exit(1)
        if state is None:
            print(f"No entry found for {args.import_dn}")
            sys.exit(1)
        print(yaml.safe_dump({'objects': [state]}, default_flow_style=False, sort_keys=False))
        sys.exit(0)

    else:
        exit_code = orchestrator.run(dry_run=args.dry_run)
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
