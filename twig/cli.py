import argparse
import logging
import os
import sys
import textwrap

from . import data
from .base import Repository
from .credentials import Token, UsernamePassword
from .errors import MergeConflict, TwigError
from .types import ResetMode


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    try:
        return args.func(args) or 0
    except MergeConflict as e:
        for path in e.paths:
            print(f'CONFLICT: {path}')
        print('Automatic merge failed; fix conflicts and then commit the result.')
        return 1
    except (TwigError, ValueError, FileNotFoundError) as e:
        print(f'fatal: {e}', file=sys.stderr)
        return 1


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='twig')
    parser.add_argument('-v', '--verbose', action='store_true')
    commands = parser.add_subparsers(dest='command')
    commands.required = True

    init_parser = commands.add_parser('init')
    init_parser.set_defaults(func=init)
    init_parser.add_argument('directory', nargs='?', default='.')
    init_parser.add_argument('--bare', action='store_true')
    init_parser.add_argument('-b', '--initial-branch', default='master')
    init_parser.add_argument('--object-format', choices=sorted(data.HASH_LENGTHS), default='sha1')

    clone_parser = commands.add_parser('clone')
    clone_parser.set_defaults(func=clone)
    clone_parser.add_argument('uri')
    clone_parser.add_argument('directory', nargs='?')
    clone_parser.add_argument('-b', '--branch')
    _add_credential_arguments(clone_parser)

    hash_object_parser = commands.add_parser('hash-object')
    hash_object_parser.set_defaults(func=hash_object)
    hash_object_parser.add_argument('file')
    hash_object_parser.add_argument('-w', dest='write', action='store_true')

    cat_file_parser = commands.add_parser('cat-file')
    cat_file_parser.set_defaults(func=cat_file)
    cat_file_parser.add_argument('object')

    write_tree_parser = commands.add_parser('write-tree')
    write_tree_parser.set_defaults(func=write_tree)

    read_tree_parser = commands.add_parser('read-tree')
    read_tree_parser.set_defaults(func=read_tree)
    read_tree_parser.add_argument('tree')

    add_parser = commands.add_parser('add')
    add_parser.set_defaults(func=add)
    add_parser.add_argument('files', nargs='*')
    add_parser.add_argument('-A', '--all', action='store_true')

    commit_parser = commands.add_parser('commit')
    commit_parser.set_defaults(func=commit)
    commit_parser.add_argument('-m', '--message', required=True)

    status_parser = commands.add_parser('status')
    status_parser.set_defaults(func=status)

    log_parser = commands.add_parser('log')
    log_parser.set_defaults(func=log)
    log_parser.add_argument('oid', default='@', nargs='?')

    branch_parser = commands.add_parser('branch')
    branch_parser.set_defaults(func=branch)
    branch_parser.add_argument('name', nargs='?')
    branch_parser.add_argument('start_point', default='@', nargs='?')
    branch_parser.add_argument('-d', '--delete', action='store_true')
    branch_parser.add_argument('-D', dest='force_delete', action='store_true')

    checkout_parser = commands.add_parser('checkout')
    checkout_parser.set_defaults(func=checkout)
    checkout_parser.add_argument('commit')
    checkout_parser.add_argument('-f', '--force', action='store_true')

    merge_parser = commands.add_parser('merge')
    merge_parser.set_defaults(func=merge)
    merge_parser.add_argument('commit')

    merge_base_parser = commands.add_parser('merge-base')
    merge_base_parser.set_defaults(func=merge_base)
    merge_base_parser.add_argument('commit1')
    merge_base_parser.add_argument('commit2')

    reset_parser = commands.add_parser('reset')
    reset_parser.set_defaults(func=reset)
    reset_parser.add_argument('commit', default='@', nargs='?')
    mode = reset_parser.add_mutually_exclusive_group()
    for reset_mode in ResetMode:
        mode.add_argument(f'--{reset_mode.value}', dest='mode', action='store_const', const=reset_mode)

    clean_parser = commands.add_parser('clean')
    clean_parser.set_defaults(func=clean)
    clean_parser.add_argument('-f', '--force', action='store_true')
    clean_parser.add_argument('-d', dest='directories', action='store_true')

    tag_parser = commands.add_parser('tag')
    tag_parser.set_defaults(func=tag)
    tag_parser.add_argument('name', nargs='?')
    tag_parser.add_argument('oid', default='@', nargs='?')
    tag_parser.add_argument('-m', '--message')
    tag_parser.add_argument('-f', '--force', action='store_true')
    tag_parser.add_argument('-d', '--delete', action='store_true')

    show_ref_parser = commands.add_parser('show-ref')
    show_ref_parser.set_defaults(func=show_ref)

    for name, func in (('fetch', fetch), ('pull', pull), ('push', push)):
        remote_parser = commands.add_parser(name)
        remote_parser.set_defaults(func=func)
        remote_parser.add_argument('remote', nargs='?')
        _add_credential_arguments(remote_parser)
        if name == 'push':
            remote_parser.add_argument('-f', '--force', action='store_true')
            remote_parser.add_argument('-u', '--set-upstream', action='store_true')
            remote_parser.add_argument('--tag')

    return parser.parse_args(argv)


def _add_credential_arguments(parser):
    parser.add_argument('--username', default=os.environ.get('TWIG_USERNAME'))
    parser.add_argument('--password', default=os.environ.get('TWIG_PASSWORD'))
    parser.add_argument('--token', default=os.environ.get('TWIG_TOKEN'))


def _credentials(args):
    if getattr(args, 'token', None):
        return Token(args.token, args.username)
    if getattr(args, 'username', None) and getattr(args, 'password', None):
        return UsernamePassword(args.username, args.password)
    return None


def _repo(args=None):
    return Repository.open('.', credentials=_credentials(args) if args else None)


def init(args):
    repo = Repository.init(args.directory, default_branch=args.initial_branch,
                           hash_name=args.object_format, bare=args.bare)
    print(f'Initialized empty twig repository in {repo.git_dir}')


def clone(args):
    directory = args.directory or os.path.basename(args.uri.rstrip('/')) or 'repo'
    repo = Repository.clone(args.uri, directory, credentials=_credentials(args), branch=args.branch)
    print(f'Cloned into {repo.root}')


def hash_object(args):
    repo = _repo()
    with open(args.file, 'rb') as f:
        content = f.read()
    print(repo.objects.put(content) if args.write else repo.objects.hash(content)[0])


def cat_file(args):
    repo = _repo()
    type_, content = repo.objects.read(repo.resolve(args.object))
    sys.stdout.flush()
    if type_ == 'blob':
        sys.stdout.buffer.write(content)
    else:
        sys.stdout.write(content.decode())


def write_tree(args):
    print(_repo().write_tree())


def read_tree(args):
    repo = _repo()
    repo.read_tree(repo.resolve(args.tree))


def add(args):
    repo = _repo()
    if args.all or not args.files:
        repo.add_all()
    else:
        repo.add([os.path.abspath(name) for name in args.files])


def commit(args):
    print(_repo().commit(args.message))


def status(args):
    repo = _repo()
    status_ = repo.status()
    if status_.branch:
        print(f'On branch {status_.branch}')
    else:
        print(f'HEAD detached at {repo.head()[:10]}')
    if repo.refs.get('MERGE_HEAD').value:
        print('You are in the middle of a merge.')

    sections = [
        ('Changes to be committed:', status_.staged),
        ('Changes not staged for commit:', status_.unstaged),
    ]
    for title, changes in sections:
        if not changes:
            continue
        print(f'\n{title}')
        for label, paths in (('new file', changes.added), ('modified', changes.modified),
                             ('deleted', changes.deleted)):
            for path in paths:
                print(f'\t{label + ":":<12} {path}')
    if status_.conflicted:
        print('\nUnmerged paths:')
        for path in status_.conflicted:
            print(f'\tboth modified: {path}')
    if status_.untracked:
        print('\nUntracked files:')
        for path in status_.untracked:
            print(f'\t{path}')


def log(args):
    repo = _repo()
    refs = {}
    for refname, ref in repo.refs.iter_refs():
        refs.setdefault(ref.value, []).append(refname)

    start = 'HEAD' if args.oid == '@' else args.oid
    for oid, commit_ in repo.log(start):
        refs_str = f' ({", ".join(refs[oid])})' if oid in refs else ''
        print(f'commit {oid}{refs_str}')
        print(f'Author: {commit_.author.name} <{commit_.author.email}>')
        for parent in commit_.parents[1:2]:
            print(f'Merge: {commit_.parents[0][:10]} {parent[:10]}')
        print('')
        print(textwrap.indent(commit_.message, '    '))
        print('')


def branch(args):
    repo = _repo()
    if args.delete or args.force_delete:
        repo.delete_branch(args.name, force=args.force_delete)
        print(f'Deleted branch {args.name}')
    elif args.name:
        oid = repo.create_branch(args.name, args.start_point)
        print(f'Branch {args.name} created at {oid[:10]}')
    else:
        current = repo.current_branch()
        for name in repo.list_branches():
            prefix = '*' if name == current else ' '
            print(f'{prefix} {name}')


def checkout(args):
    repo = _repo()
    if repo.is_branch_name(args.commit) or repo.refs.get(f'refs/remotes/origin/{args.commit}').value:
        repo.checkout_branch(args.commit, force=args.force)
    else:
        repo.checkout(args.commit, force=args.force)


def merge(args):
    result = _repo().merge(args.commit)
    if result.up_to_date:
        print('Already up to date.')
    elif result.fast_forward:
        print(f'Fast-forward to {result.oid[:10]}')
    else:
        print(f'Merge made, commit {result.oid[:10]}')


def merge_base(args):
    oid = _repo().merge_base(args.commit1, args.commit2)
    if oid is None:
        return 1
    print(oid)


def reset(args):
    _repo().reset(args.mode or ResetMode.MIXED, args.commit)


def clean(args):
    removed = _repo().clean(force=args.force, directories=args.directories)
    verb = 'Removing' if args.force else 'Would remove'
    for path in removed:
        print(f'{verb} {path}')


def tag(args):
    repo = _repo()
    if args.delete:
        repo.delete_tag(args.name)
        print(f'Deleted tag {args.name}')
    elif args.name:
        repo.tag(args.name, message=args.message, target=args.oid, force=args.force)
    else:
        for name in repo.list_tags():
            print(name)


def show_ref(args):
    for refname, ref in _repo().refs.iter_refs('refs/'):
        print(f'{ref.value} {refname}')


def fetch(args):
    updated = _repo(args).fetch(args.remote or 'origin')
    for refname, oid in updated.items():
        print(f'{oid[:10]} -> {refname}')


def pull(args):
    merge_ = _repo(args).pull(args.remote)
    print('Already up to date.' if merge_.up_to_date else f'Updated to {merge_.oid[:10]}')


def push(args):
    repo = _repo(args)
    if args.tag:
        moved = repo.push_tag(args.tag, args.remote or 'origin', force=args.force)
    else:
        moved = repo.push(args.remote, force=args.force, set_upstream=args.set_upstream)
    if not moved:
        print('Everything up-to-date')
    for refname, oid in moved.items():
        print(f'{oid[:10]} -> {refname}')
