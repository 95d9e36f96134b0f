import pytest

from secure_pillar.actions import Action, Processor
from secure_pillar.pillar import NOT_FOUND, SecureDocument
from secure_pillar.utils import (
    PGP_HEADER,
    ArgumentMismatch,
    DecryptFailure,
    SecurePillarException,
    is_encrypted,
)

from conftest import KEY, NEW_KEY

SCENARIO = "secure_vars:\n  password: secret\n  api_key: key_value\nother: plain\n"


class Exploding:
    def __getattr__(self, name):
        raise AssertionError(f"{name} should not have been called")


def document(text: str = SCENARIO, element='secure_vars') -> SecureDocument:
    return SecureDocument.read(text, 'example.sls', element)


def test_resolve_action():
    assert Action.resolve('encrypt') is Action.ENCRYPT
    assert Action.resolve('keys') is Action.VALIDATE
    assert Action.resolve(Action.ROTATE) is Action.ROTATE
    with pytest.raises(SecurePillarException):
        Action.resolve('shred')


def test_encrypt_scenario(processor):
    doc = document()
    buffer = processor.perform(doc, 'encrypt')

    assert buffer.startswith(b'#!yaml|gpg\n\n')
    assert doc.get('secure_vars:password').startswith(PGP_HEADER)
    assert doc.get('secure_vars:api_key').startswith(PGP_HEADER)
    assert doc.get('other') == 'plain'

    reread = SecureDocument.read(buffer.decode('utf-8'), element='secure_vars')
    processor.perform(reread, 'decrypt')
    assert reread.tree == {
        'secure_vars': {'password': 'secret', 'api_key': 'key_value'},
        'other': 'plain',
    }


def test_encrypt_is_idempotent(fake):
    doc = document()
    fake.perform(doc, Action.ENCRYPT)
    once = doc.format()
    fake.perform(doc, Action.ENCRYPT)
    assert doc.format() == once


def test_encrypt_whole_document(fake):
    doc = document(element=None)
    fake.perform(doc, Action.ENCRYPT)
    assert all(is_encrypted(value) for _, value in doc.secure_leaves())


def test_encrypt_nested(fake, pillars):
    doc = SecureDocument.open(pillars / 'nested' / 'nested.sls', 'secure_vars')
    fake.perform(doc, Action.ENCRYPT)

    assert all(is_encrypted(value) for _, value in doc.secure_leaves())
    assert len(doc.get('secure_vars:users')) == 2
    assert doc.get('plain') == 'value'

    fake.perform(doc, Action.DECRYPT)
    assert doc.get('secure_vars:database:port') == '5432'
    assert doc.get('secure_vars:certificate') == 'line one\nline two\n'


def test_encrypt_scalars_as_text(fake):
    doc = document("secure_vars:\n  enabled: true\n  empty: null\n")
    fake.perform(doc, Action.ENCRYPT)
    assert doc.get('secure_vars:empty') is None

    fake.perform(doc, Action.DECRYPT)
    assert doc.get('secure_vars:enabled') == 'true'


def test_decrypt_leaves_plain_values(fake):
    doc = document()
    doc.set('secure_vars:password', fake.keys.encrypt('secret'))
    fake.perform(doc, Action.DECRYPT)
    assert doc.get('secure_vars') == {'password': 'secret', 'api_key': 'key_value'}


def test_decrypt_failure_leaves_document_unchanged(fake):
    doc = document()
    doc.set('secure_vars:api_key', fake.keys.encrypt('key_value'))
    doc.set('secure_vars:password', f"{PGP_HEADER}\nOTHER:c2VjcmV0\n-----END PGP MESSAGE-----\n")
    before = doc.format()

    with pytest.raises(DecryptFailure):
        fake.perform(doc, Action.DECRYPT)
    assert doc.format() == before


@pytest.mark.parametrize('action', ['encrypt', 'decrypt', 'rotate'])
def test_missing_element_is_a_noop(action):
    doc = document("other: plain\n", element='secure_vars')
    buffer = Processor(Exploding()).perform(doc, action)
    assert doc.tree == {'other': 'plain'}
    assert buffer == b'#!yaml|gpg\n\nother: plain\n'


@pytest.mark.parametrize('action', ['encrypt', 'decrypt', 'rotate', 'validate'])
def test_include_is_a_noop(action, pillars):
    doc = SecureDocument.open(pillars / 'include.sls')
    assert Processor(Exploding()).perform(doc, action) == b''
    assert doc.tree == {'include': ['common.secrets']}


def test_parse_failure_is_raised(fake, pillars):
    doc = SecureDocument.open(pillars / 'bad.sls')
    with pytest.raises(SecurePillarException):
        fake.perform(doc, Action.ENCRYPT)


def test_rotate(processor, keys, new_keys):
    doc = document()
    doc.set('secure_vars:password', keys.encrypt('secret'))

    Processor(new_keys).perform(doc, Action.ROTATE)

    for _, value in doc.secure_leaves():
        assert NEW_KEY in keys.key_used_for(value)
    assert doc.get('other') == 'plain'

    processor.perform(doc, Action.DECRYPT)
    assert doc.get('secure_vars') == {'password': 'secret', 'api_key': 'key_value'}


def test_validate(processor, keys, new_keys):
    doc = document()
    doc.set('secure_vars:password', keys.encrypt('secret'))
    doc.set('secure_vars:api_key', new_keys.encrypt('key_value'))
    before = doc.format()

    report = processor.report(doc)
    assert [path for path, _ in report.entries] == ['secure_vars:password', 'secure_vars:api_key']
    assert report.count == 2
    assert KEY in report.unique[0] and NEW_KEY in report.unique[1]
    assert report.summary().startswith('2 keys found:')

    buffer = processor.perform(doc, Action.VALIDATE)
    assert b'secure_vars:password' in buffer
    assert doc.format() == before


def test_validate_skips_plain_values(fake):
    doc = document()
    doc.set('secure_vars:password', fake.keys.encrypt('secret'))
    report = fake.report(doc)
    assert report.entries == (('secure_vars:password', 'FAKE'),)
    assert report.unique == ('FAKE',)


def test_process_path(fake):
    doc = document()
    value = fake.process_path(doc, 'secure_vars:password', Action.ENCRYPT)
    assert is_encrypted(value)
    assert doc.get('secure_vars:password') == value
    assert doc.get('secure_vars:api_key') == 'key_value'


def test_process_path_sub_tree(fake):
    doc = document()
    value = fake.process_path(doc, 'secure_vars', Action.ENCRYPT)
    assert set(value) == {'password', 'api_key'}
    assert all(is_encrypted(v) for v in value.values())


def test_process_path_non_string_key(fake):
    doc = document("ports:\n  80: http\n", element=None)
    fake.process_path(doc, 'ports:80', Action.ENCRYPT)

    assert list(doc.tree['ports']) == [80]
    assert is_encrypted(doc.tree['ports'][80])
    assert b'http' not in doc.format()


def test_process_path_not_found(fake):
    doc = document()
    assert fake.process_path(doc, 'secure_vars:nope', Action.DECRYPT) is NOT_FOUND


def test_process_path_validate(fake):
    doc = document()
    fake.perform(doc, Action.ENCRYPT)
    report = fake.process_path(doc, 'secure_vars:api_key', Action.VALIDATE)
    assert report.entries == (('secure_vars:api_key', 'FAKE'),)


def test_process_pairs(fake):
    doc = SecureDocument(path='new.sls', element='secure_vars')
    fake.process_pairs(doc, ['password', 'nested:token'], ['secret', 'abc'])
    assert is_encrypted(doc.get('secure_vars:password'))
    assert is_encrypted(doc.get('secure_vars:nested:token'))
    assert fake.keys.decrypt(doc.get('secure_vars:nested:token')) == 'abc'


def test_process_pairs_without_element(fake):
    doc = SecureDocument(path='new.sls')
    fake.process_pairs(doc, ['password'], ['secret'])
    assert list(doc.tree) == ['password']


@pytest.mark.parametrize('names,values', [
    (['a', 'b'], ['1']),
    (['a'], ['1', '2']),
    ([], []),
    (['a', ' '], ['1', '2']),
])
def test_process_pairs_mismatch(names, values):
    doc = document()
    before = doc.format()
    with pytest.raises(ArgumentMismatch):
        Processor(Exploding()).process_pairs(doc, names, values)
    assert doc.format() == before


def test_process_pairs_parse_failure(pillars):
    doc = SecureDocument.open(pillars / 'bad.sls')
    with pytest.raises(SecurePillarException):
        Processor(Exploding()).process_pairs(doc, ['password'], ['secret'])
    assert doc.tree == {}


def test_process_pairs_failure_leaves_document_unchanged(fake):
    doc = document()
    before = doc.format()
    with pytest.raises(SecurePillarException):
        fake.process_pairs(doc, ['first', 'second'], ['fine', 'boom'])
    assert doc.format() == before
