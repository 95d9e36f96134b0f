"""
Profiles select a default key and GnuPG home per environment, e.g.:

    profiles:
      - name: dev
        default: true
        default_key: Dev Salt Master
        gnupg_home: ~/.gnupg/dev
"""

import logging
import os
import pathlib
import typing

import attr
import yaml

from .utils import SecurePillarException, expand_path

log = logging.getLogger(__name__)

CONFIG_ENVVAR = 'SECURE_PILLAR_CONFIG'
DEFAULT_CONFIG = '~/.config/secure-pillar/config.yaml'


@attr.s(frozen=True, kw_only=True)
class Profile:
    name: str = attr.ib()
    default: bool = attr.ib(default=False)
    default_key: typing.Optional[str] = attr.ib(default=None)
    gnupg_home: typing.Optional[pathlib.Path] = attr.ib(
        default=None,
        converter=attr.converters.optional(expand_path))


@attr.s(frozen=True)
class Settings:
    path: typing.Optional[pathlib.Path] = attr.ib(default=None)
    profiles: typing.Tuple[Profile, ...] = attr.ib(factory=tuple, converter=tuple)

    @classmethod
    def load(cls, path: typing.Union[str, pathlib.Path, None] = None) -> 'Settings':
        path = expand_path(path or os.environ.get(CONFIG_ENVVAR) or DEFAULT_CONFIG)

        if not path.exists():
            log.debug(f"No config file at {path}")
            return cls(path=path)

        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8')) or {}
        except (OSError, yaml.YAMLError) as error:
            raise SecurePillarException(f"Unable to read config file {path}: {error}")

        if not isinstance(data, dict):
            raise SecurePillarException(f"Config file {path} is not a mapping")

        profiles = data.get('profiles') or []
        if not isinstance(profiles, list):
            raise SecurePillarException(f"'profiles' in {path} is not a list")

        return cls(path=path, profiles=[cls.parse_profile(p, path) for p in profiles])

    @staticmethod
    def parse_profile(data: typing.Any, path: pathlib.Path) -> Profile:
        if not isinstance(data, dict) or not data.get('name'):
            raise SecurePillarException(f"Profiles in {path} need a name")
        return Profile(
            name=str(data['name']),
            default=bool(data.get('default', False)),
            default_key=data.get('default_key') or None,
            gnupg_home=data.get('gnupg_home') or None)

    def profile(self, name: typing.Optional[str] = None) -> typing.Optional[Profile]:
        """The named profile, or the default profile if no name is given."""
        if name:
            for profile in self.profiles:
                if profile.name == name:
                    return profile
            raise SecurePillarException(f"No profile named '{name}' in {self.path}")

        for profile in self.profiles:
            if profile.default:
                return profile
        return None


def gnupg_home() -> pathlib.Path:
    return expand_path(os.environ.get('GNUPGHOME') or '~/.gnupg')


def keyrings(home: pathlib.Path) -> typing.Tuple[pathlib.Path, pathlib.Path]:
    """The public and secret keyrings in a GnuPG home directory."""
    kbx = home / 'pubring.kbx'
    return (kbx if kbx.exists() else home / 'pubring.gpg'), home / 'secring.gpg'


@attr.s(frozen=True, kw_only=True)
class KeySettings:
    identity: typing.Optional[str] = attr.ib()
    pubring: pathlib.Path = attr.ib()
    secring: pathlib.Path = attr.ib()

    @classmethod
    def resolve(
            cls,
            settings: Settings,
            profile: typing.Optional[str] = None,
            identity: typing.Optional[str] = None,
            pubring: typing.Optional[str] = None,
            secring: typing.Optional[str] = None) -> 'KeySettings':
        """
        Combine command line options with a profile.

        A profile is only consulted when one is named or no key was given.
        Explicit keyrings win over the profile's GnuPG home, which wins over
        $GNUPGHOME and ~/.gnupg.
        """
        selected = settings.profile(profile) if (profile or not identity) else None
        if selected:
            log.debug(f"Using profile '{selected.name}'")

        home = selected.gnupg_home if selected and selected.gnupg_home else gnupg_home()
        default_pubring, default_secring = keyrings(home)

        return cls(
            identity=identity or (selected.default_key if selected else None),
            pubring=expand_path(pubring) if pubring else default_pubring,
            secring=expand_path(secring) if secring else default_secring)
