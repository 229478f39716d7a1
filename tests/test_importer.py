"""Tests for the import walk."""

from unittest.mock import AsyncMock, Mock

import pytest

from si_migrator.api.exceptions import OrganizationNotFoundError, SpaceNotFoundError
from si_migrator.migration.exceptions import ImportDirectoryNotFoundError
from si_migrator.migration.importer import OrgImporter, SpaceImporter
from si_migrator.migration.mover import InstanceMover


INSTANCE_MANIFEST = """\
name: {name}
type: managed_service_instance
service: p.mysql
plan: db-small
"""


class TestImporters:
    """Test the org and space walk of the export directory."""

    @pytest.fixture(autouse=True)
    def setup(self, make_context, tmp_path):
        self.base_dir = tmp_path / 'export'
        self.context = make_context(export_dir=str(self.base_dir), exclude_orgs=['^skip'])
        self.mover = Mock(spec=InstanceMover)
        self.mover.import_instance = AsyncMock()
        self.importer = OrgImporter(self.context, SpaceImporter(self.context, self.mover))

    def write(self, org, space, filename, content):
        directory = self.base_dir / org / space
        directory.mkdir(parents=True, exist_ok=True)
        (directory / filename).write_text(content)

    def imported(self):
        return [
            (call.args[0], call.args[1], call.args[2].name)
            for call in self.mover.import_instance.await_args_list
        ]

    def test_missing_import_dir(self):
        with pytest.raises(ImportDirectoryNotFoundError, match='does not exist'):
            self.importer.check_import_dir()

    @pytest.mark.asyncio
    async def test_import_all(self):
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))
        self.write('team', 'prod', 'cache.yml', INSTANCE_MANIFEST.format(name='cache'))
        self.write('skipped-org', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))

        await self.importer.import_all()

        assert self.imported() == [('team', 'dev', 'db'), ('team', 'prod', 'cache')]

    @pytest.mark.asyncio
    async def test_non_instance_manifests_ignored(self):
        """Test that app manifests and other files are not imported."""
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))
        self.write('team', 'dev', 'web_manifest.yml', 'applications:\n- name: web\n')
        self.write('team', 'dev', 'mysql-backup.tar.gpg', 'binary')

        await self.importer.import_space('team', 'dev')

        assert self.imported() == [('team', 'dev', 'db')]

    @pytest.mark.asyncio
    async def test_unreadable_manifest_is_recorded(self):
        self.write('team', 'dev', 'broken.yml', 'name: [unclosed\n')
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))

        await self.importer.import_space('team', 'dev')

        results = self.context.summary.results()
        assert len(results) == 1
        assert results[0].name == 'broken'
        assert results[0].message.startswith('failed to read')
        assert self.imported() == [('team', 'dev', 'db')]

    @pytest.mark.asyncio
    async def test_import_orgs_missing(self):
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))

        with pytest.raises(OrganizationNotFoundError):
            await self.importer.import_orgs(['ghost'])

    @pytest.mark.asyncio
    async def test_import_orgs(self):
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))
        self.write('other', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))

        await self.importer.import_orgs(['team'])

        assert self.imported() == [('team', 'dev', 'db')]

    @pytest.mark.asyncio
    async def test_import_space_missing(self):
        self.write('team', 'dev', 'db.yml', INSTANCE_MANIFEST.format(name='db'))

        with pytest.raises(SpaceNotFoundError):
            await self.importer.import_space('team', 'prod')
