import pathlib
import sys
import unittest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.authorization import (
    DELETE_INDICATOR,
    MANAGE_DISCUSSIONS,
    MANAGE_MEETINGS,
    MANAGE_NOTIFICATIONS,
    MANAGE_STRATEGIC_GOALS,
    MANAGE_USERS,
    ROLE_ADMINISTRATOR,
    ROLE_AREA_MANAGER,
    ROLE_MEMBER,
    ROLE_OVERSIGHT,
    WRITE_INDICATOR,
    IndicatorTarget,
    authorize,
    canonical_role,
)
from services.errors import AuthorizationError
from services.identity import Principal

ADMIN = Principal(id='admin', name='Ana', role='Administrator', area='General')
FINANCE_MANAGER = Principal(id='fm', name='Fede', role='Area Manager', area='Finance')
OVERSIGHT = Principal(id='ov', name='Olga', role='Oversight Committee', area='Control')
MEMBER = Principal(id='mb', name='Mario', role='Member', area='Finance')


class RoleAliasTests(unittest.TestCase):
    def test_legacy_role_names_map_to_canonical_roles(self):
        self.assertEqual(canonical_role('Administrador'), ROLE_ADMINISTRATOR)
        self.assertEqual(canonical_role('Gerente de Área'), ROLE_AREA_MANAGER)
        self.assertEqual(canonical_role('  comité de VIGILANCIA '), ROLE_OVERSIGHT)

    def test_unknown_roles_fall_back_to_member(self):
        self.assertEqual(canonical_role('Guest'), ROLE_MEMBER)
        self.assertEqual(canonical_role(None), ROLE_MEMBER)


class CollectionPermissionTests(unittest.TestCase):
    def test_only_administrators_manage_users_and_goals(self):
        authorize(ADMIN, MANAGE_USERS)
        authorize(ADMIN, MANAGE_STRATEGIC_GOALS)
        for actor in (FINANCE_MANAGER, OVERSIGHT, MEMBER):
            with self.assertRaises(AuthorizationError) as ctx:
                authorize(actor, MANAGE_USERS)
            self.assertEqual(ctx.exception.status, 403)
            with self.assertRaises(AuthorizationError):
                authorize(actor, MANAGE_STRATEGIC_GOALS)

    def test_meetings_allow_administrators_and_oversight(self):
        authorize(ADMIN, MANAGE_MEETINGS)
        authorize(OVERSIGHT, MANAGE_MEETINGS)
        with self.assertRaises(AuthorizationError):
            authorize(FINANCE_MANAGER, MANAGE_MEETINGS)
        with self.assertRaises(AuthorizationError):
            authorize(MEMBER, MANAGE_MEETINGS)

    def test_everyone_can_write_threads_and_notifications(self):
        for actor in (ADMIN, FINANCE_MANAGER, OVERSIGHT, MEMBER):
            authorize(actor, MANAGE_DISCUSSIONS)
            authorize(actor, MANAGE_NOTIFICATIONS)

    def test_spanish_administrator_role_is_recognised(self):
        authorize(Principal(id='x', role='Administrador'), MANAGE_USERS)

    def test_unknown_action_is_a_programming_error(self):
        with self.assertRaises(ValueError):
            authorize(ADMIN, 'launch_rockets')


class IndicatorPermissionTests(unittest.TestCase):
    def test_area_manager_may_write_own_area(self):
        target = IndicatorTarget('ind-1', stored_area='finance', submitted_area=' Finance ', exists=True)
        authorize(FINANCE_MANAGER, WRITE_INDICATOR, target)

    def test_area_manager_may_create_in_own_area(self):
        authorize(FINANCE_MANAGER, WRITE_INDICATOR, IndicatorTarget('new', submitted_area='Finance'))

    def test_area_manager_blocked_on_other_area(self):
        target = IndicatorTarget('ind-ops', stored_area='Operations', submitted_area='Operations', exists=True)
        with self.assertRaises(AuthorizationError) as ctx:
            authorize(FINANCE_MANAGER, WRITE_INDICATOR, target)
        self.assertEqual(ctx.exception.target, 'indicator ind-ops')
        self.assertIn('ind-ops', ctx.exception.message)

    def test_area_manager_cannot_claim_foreign_indicator_by_renaming_area(self):
        target = IndicatorTarget('ind-ops', stored_area='Operations', submitted_area='Finance', exists=True)
        with self.assertRaises(AuthorizationError):
            authorize(FINANCE_MANAGER, WRITE_INDICATOR, target)

    def test_area_manager_cannot_hand_indicator_to_other_area(self):
        target = IndicatorTarget('ind-fin', stored_area='Finance', submitted_area='Operations', exists=True)
        with self.assertRaises(AuthorizationError):
            authorize(FINANCE_MANAGER, WRITE_INDICATOR, target)

    def test_area_manager_delete_checks_stored_area(self):
        authorize(FINANCE_MANAGER, DELETE_INDICATOR, IndicatorTarget('a', stored_area='Finance', exists=True))
        with self.assertRaises(AuthorizationError) as ctx:
            authorize(FINANCE_MANAGER, DELETE_INDICATOR, IndicatorTarget('b', stored_area='Legal', exists=True))
        self.assertIn('delete', ctx.exception.message)

    def test_area_manager_without_area_is_always_blocked(self):
        actor = Principal(id='nobody', role='Area Manager', area='')
        with self.assertRaises(AuthorizationError):
            authorize(actor, WRITE_INDICATOR, IndicatorTarget('x', submitted_area=''))

    def test_administrator_and_oversight_are_unrestricted(self):
        target = IndicatorTarget('ind-ops', stored_area='Operations', submitted_area='Legal', exists=True)
        authorize(ADMIN, WRITE_INDICATOR, target)
        authorize(OVERSIGHT, DELETE_INDICATOR, target)

    def test_members_cannot_write_indicators(self):
        with self.assertRaises(AuthorizationError):
            authorize(MEMBER, WRITE_INDICATOR, IndicatorTarget('x', submitted_area='Finance'))

    def test_indicator_actions_require_a_target(self):
        with self.assertRaises(ValueError):
            authorize(ADMIN, WRITE_INDICATOR)


if __name__ == '__main__':
    unittest.main()
