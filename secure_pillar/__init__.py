"""
Secure pillar manages SaltStack pillar files with PGP encrypted values.

Values inside a YAML pillar file are encrypted in place as ASCII-armored PGP
messages, the rest of the file stays plain text. Files are written with the
'#!yaml|gpg' renderer line so Salt decrypts them on the master. Paths into a
file are colon separated, e.g. 'some:yaml:path'.

Create a new file from name/value pairs:

\b
    $ secure-pillar -k "Salt Master" create -n db_password -s hunter2 -o secrets.sls

Encrypt every plain value under the 'secure_vars' element, in place:

\b
    $ secure-pillar -k "Salt Master" -e secure_vars encrypt all -f secrets.sls -u

Decrypt all .sls files under a directory (requires the secret key):

\b
    $ secure-pillar decrypt recurse -d /srv/pillar/secure

Re-encrypt everything with a new key:

\b
    $ secure-pillar -k "New Salt Master" rotate -d /srv/pillar/secure

Show the keys used in a file:

\b
    $ secure-pillar keys all -f secrets.sls
"""

__author__ = 'Secure Pillar Developers'
__version__ = '1.0.0'
