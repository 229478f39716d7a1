"""Tests for manifest reading and writing."""

from pathlib import Path

import pytest
import yaml

from si_migrator.io.parser import (
    FileDescriptor,
    ManifestParser,
    is_empty_dir,
    iter_manifests,
    list_org_dirs,
    list_space_dirs,
)
from si_migrator.models.service_instance import (
    USER_PROVIDED_SERVICE_INSTANCE,
    ServiceBinding,
    ServiceInstance,
)


class TestFileDescriptor:
    """Test export file addressing."""

    def test_path(self):
        descriptor = FileDescriptor('/export', 'org', 'space', 'db')

        assert descriptor.path == Path('/export/org/space/db.yml')

    def test_from_path(self):
        descriptor = FileDescriptor.from_path('/export', Path('/export/org/space/db.yaml'))

        assert descriptor == FileDescriptor('/export', 'org', 'space', 'db', 'yaml')

    def test_from_path_wrong_depth(self):
        with pytest.raises(ValueError):
            FileDescriptor.from_path('/export', Path('/export/org/db.yml'))


class TestManifestParser:
    """Test YAML marshalling of service instances."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = ManifestParser()

    def test_marshal_creates_directories(self, tmp_path):
        instance = ServiceInstance(
            name='db',
            guid='guid-1',
            type='managed_service_instance',
            service='p.mysql',
            plan='db-small',
            tags=['mysql', 'primary'],
        )
        descriptor = FileDescriptor(str(tmp_path), 'org', 'space', 'db')

        path = self.parser.marshal(instance, descriptor)

        data = yaml.safe_load(path.read_text())
        assert data['name'] == 'db'
        assert data['tags'] == 'mysql,primary'
        assert data['app_manifest'] == {'applications': []}
        assert 'backup_file' not in data

    def test_unmarshal(self, tmp_path):
        descriptor = FileDescriptor(str(tmp_path), 'org', 'space', 'creds')
        descriptor.directory.mkdir(parents=True)
        descriptor.path.write_text(
            'name: creds\n'
            'type: user_provided_service_instance\n'
            'service: user-provided\n'
            'credentials:\n'
            '  uri: https://apps.example.com\n'
            'service_bindings:\n'
            '- guid: b-1\n'
            '  app_guid: a-1\n'
            'unknown_field: ignored\n'
        )

        instance = self.parser.unmarshal(ServiceInstance, descriptor)

        assert instance.type == USER_PROVIDED_SERVICE_INSTANCE
        assert instance.is_user_provided is True
        assert instance.credentials == {'uri': 'https://apps.example.com'}
        assert instance.service_bindings == [ServiceBinding(guid='b-1', app_guid='a-1')]

    def test_unmarshal_empty_file(self, tmp_path):
        descriptor = FileDescriptor(str(tmp_path), 'org', 'space', 'empty')
        descriptor.directory.mkdir(parents=True)
        descriptor.path.write_text('')

        instance = self.parser.unmarshal(ServiceInstance, descriptor)

        assert instance.name == ''


class TestDirectoryListing:
    """Test export directory traversal helpers."""

    def test_is_empty_dir(self, tmp_path):
        assert is_empty_dir(str(tmp_path / 'missing')) is True
        assert is_empty_dir(str(tmp_path)) is True

        (tmp_path / 'file').write_text('x')
        assert is_empty_dir(str(tmp_path)) is False

    def test_list_dirs(self, tmp_path):
        (tmp_path / 'b-org' / 'dev').mkdir(parents=True)
        (tmp_path / 'a-org' / 'prod').mkdir(parents=True)
        (tmp_path / 'a-org' / 'dev').mkdir(parents=True)
        (tmp_path / 'notes.txt').write_text('x')

        assert list_org_dirs(str(tmp_path)) == ['a-org', 'b-org']
        assert list_space_dirs(str(tmp_path), 'a-org') == ['dev', 'prod']
        assert list_space_dirs(str(tmp_path), 'missing') == []

    def test_iter_manifests(self, tmp_path):
        space = tmp_path / 'org' / 'space'
        space.mkdir(parents=True)
        (space / 'db.yml').write_text('name: db\n')
        (space / 'cache.yaml').write_text('name: cache\n')
        (space / 'mysql-backup.tar.gpg').write_text('x')
        (space / 'nested').mkdir()

        names = [d.name for d in iter_manifests(str(tmp_path), 'org', 'space')]

        assert names == ['cache', 'db']
        assert list(iter_manifests(str(tmp_path), 'org', 'missing')) == []
