"""
Notes section generator: rebuilds the post index and post pages from
Markdown sources. Run with ``notegen rebuild``.
"""

import click
import datetime
import dateutil.tz
import ftfy
import html
import json
import markdown
from markdown.extensions import Extension
from markdown.treeprocessors import Treeprocessor
import os
from os import path
import re
import sys

#### Settings

default_config = {
    'content_dir': 'content/notes',
    'output_dir': 'notes',
    'template_path': 'notes/post-template.html',
    'posts_json_path': 'notes/posts.json',
    'posts_js_path': 'notes/posts.js',
    # Path prefix of post pages, relative to the site root
    'url_prefix': 'notes',
    # Global variable that posts.js assigns the listing to
    'js_global': '__NOTES_POSTS__',
    'default_title': 'Untitled',
    # Used for picking "today" when creating a post
    'timezone': 'UTC',
}

config_path_keys = {
    'content_dir', 'output_dir', 'template_path', 'posts_json_path', 'posts_js_path',
}

default_config_file = 'notegen.json'


#### CLI

# Commands later hook into this as @cli.command()
@click.group()
@click.option(
    '--config', 'config_file', default=None,
    type=click.Path(exists=True, dir_okay=False),
    help=f"JSON settings file (default: ./{default_config_file} if present)",
)
@click.pass_context
def cli(ctx, config_file):
    if config_file is None and path.isfile(default_config_file):
        config_file = default_config_file
    try:
        ctx.obj = load_config(config_file)
    except BuildError as e:
        log(f"ERROR: {e}")
        sys.exit(1)


##### Utilities


class BuildError(Exception):
    """A problem that stops the whole rebuild."""


def log(msg):
    """Log messages to STDERR."""
    print(str(msg), file=sys.stderr)


def update_value(dictionary, key, fn):
    """
    If the key is in the dictionary, call fn with the value and store that back.
    """
    if key in dictionary:
        dictionary[key] = fn(dictionary[key])


def str_field(record, key):
    """Value of a string field, or empty string if absent or not a string."""
    value = record.get(key)
    return value if isinstance(value, str) else ''


def load_config(config_file=None):
    """
    Build the settings dict from defaults and an optional JSON file.

    Relative paths are resolved against the directory of the config file,
    or the working directory if there is none.
    """
    config = dict(default_config)
    base_dir = os.getcwd()
    if config_file is not None:
        try:
            with open(config_file, 'r', encoding='utf-8') as cf:
                overrides = json.loads(cf.read())
        except (OSError, ValueError) as e:
            raise BuildError(f"Could not read config file {config_file}: {e}") from e
        if not isinstance(overrides, dict):
            raise BuildError(f"Config file {config_file} must contain a JSON object")
        if extra_keys := set(overrides.keys()) - set(default_config.keys()):
            log(f"WARN: Unrecognized configuration keys in {config_file}: {extra_keys!r}")
        config.update({k: v for k, v in overrides.items() if k in default_config})
        base_dir = path.dirname(path.abspath(config_file))
    for key in config_path_keys:
        config[key] = path.normpath(path.join(base_dir, config[key]))
    return config


def write_if_changed(abs_path, content):
    """
    Write to the path if the contents differ. Returns True if written.
    """
    newbytes = content.encode('utf-8')

    if path.exists(abs_path):
        with open(abs_path, 'rb') as f:
            oldbytes = f.read()
    else:
        oldbytes = None

    if newbytes == oldbytes:
        return False
    with open(abs_path, 'wb') as f:
        f.write(newbytes)
    if oldbytes is None:
        log(f"Creating {abs_path}")
    else:
        log(f"Updating {abs_path}")
    return True


#### Front matter


fm_sep = '---'
# Consume the newline following the separator as well -- it's not part
# of the content. A separator on the last line may have no newline.
fm_sep_re = re.compile('^' + re.escape(fm_sep) + r'(?:\n|\Z)', re.MULTILINE)


def split_front_matter(combo_raw):
    """
    Return parsed JSON and post content as a (dict, string) tuple.

    Text without a front-matter block comes back as empty metadata and
    the whole text as content, as does text whose leading block can't
    be parsed as a JSON object (with a warning).
    """
    if not combo_raw.lstrip().startswith('{'):
        return ({}, combo_raw)
    m = fm_sep_re.search(combo_raw)
    if m is None:
        log("WARN: Couldn't find front-matter separator")
        return ({}, combo_raw)
    fm_end, content_begin = m.span()

    json_str = combo_raw[:fm_end]
    content = combo_raw[content_begin:]
    try:
        meta = json.loads(json_str)
    except ValueError as e:
        log(f"WARN: Could not parse front matter, treating it as content: {e}")
        return ({}, combo_raw)
    if not isinstance(meta, dict):
        log(f"WARN: Front matter is not a JSON object: {json_str.strip()[:40]!r}")
        return ({}, combo_raw)
    return (meta, content)


def read_front_matter(file_path):
    """Read a content file and split it into front matter and content."""
    try:
        with open(file_path, 'r', encoding='utf-8-sig') as f:
            combo_raw = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"Could not read {file_path}: {e}") from e
    return split_front_matter(combo_raw)


def compose_with_front_matter(meta, content_raw, file_path):
    """
    Given metadata and text content, recompose to file.
    Pretty-prints JSON in a canonical way.
    """
    # Pretty-print, sort keys, and don't escape Unicode
    json_norm = json.dumps(meta, indent=4, sort_keys=True, ensure_ascii=False)
    output = json_norm.strip() + '\n' + fm_sep + '\n' + content_raw
    with open(file_path, 'w', encoding='utf-8') as pif:
        pif.write(output)


#### Markdown


re_youtube_url = re.compile(
    r'^(?:https?://)?(?:(?:www|m)\.)?(?:youtube\.com/watch\?v=|youtu\.be/)(?P<id>[\w-]+)'
)
re_tweet_url = re.compile(
    r'^(?:https?://)?(?:(?:www|mobile)\.)?(?:twitter\.com|x\.com)/(?P<user>\w+)/status/(?P<id>[0-9]+)'
)


def youtube_embed_html(video_id):
    src = f"https://www.youtube.com/embed/{video_id}"
    return (
        '<div class="video-container">'
        f'<iframe src="{html.escape(src)}" title="YouTube video player" frameborder="0"'
        ' allow="accelerometer; autoplay; clipboard-write; encrypted-media; gyroscope; picture-in-picture; web-share"'
        ' allowfullscreen></iframe>'
        '</div>'
    )


def tweet_embed_html(url):
    # The page loads Twitter's widget script, which upgrades the blockquote.
    return (
        '<blockquote class="twitter-tweet">'
        f'<a href="{html.escape(url)}">{html.escape(url)}</a>'
        '</blockquote>'
    )


def embed_html_for_url(url):
    """
    Return embed markup for a recognized media URL, or None. YouTube wins
    over Twitter if both would somehow match.
    """
    m = re_youtube_url.match(url)
    if m:
        return youtube_embed_html(m.group('id'))
    if re_tweet_url.match(url):
        return tweet_embed_html(url)
    return None


def lone_link(element):
    """
    If the element is a paragraph whose only content is one link, return
    the link element; otherwise None.
    """
    if element.tag != 'p' or len(element) != 1:
        return None
    if (element.text or '').strip():
        return None
    child = element[0]
    if child.tag != 'a' or (child.tail or '').strip():
        return None
    return child


def no_unescape(text):
    return text


def embed_links(root, store_raw_html, unescape=no_unescape):
    """
    Rewrite top-level paragraphs consisting of a single media link into
    raw embed markup.

    ``store_raw_html`` stashes a raw HTML string and returns the placeholder
    to put in the tree in its place. ``unescape`` restores backslash-escaped
    characters in link addresses. Mutates the tree in place.
    """
    for element in root:
        link = lone_link(element)
        if link is None:
            continue
        embed = embed_html_for_url(unescape(link.get('href', '')))
        if embed is None:
            continue
        # A paragraph holding nothing but a stash placeholder is swapped
        # for the block-level HTML when serialized.
        element.clear()
        element.text = store_raw_html(embed)


def find_first_image(root, unescape=no_unescape):
    """
    Address of the first image in document order (depth-first, pre-order),
    or None if there are no images.
    """
    for element in root.iter('img'):
        return unescape(element.get('src', ''))
    return None


def unescape_for(md):
    """
    Backslash escapes are still placeholders until the 'unescape' tree
    processor runs at the very end, so addresses read earlier need this.
    """
    return md.treeprocessors['unescape'].unescape


class EmbedTreeprocessor(Treeprocessor):
    def run(self, root):
        embed_links(root, self.md.htmlStash.store, unescape_for(self.md))


class ThumbnailTreeprocessor(Treeprocessor):
    def run(self, root):
        self.md.thumbnail = find_first_image(root, unescape_for(self.md))


class NotesExtension(Extension):
    """
    Media embeds and thumbnail discovery. After ``convert``, the
    Markdown instance's ``thumbnail`` is the first image address or None.
    """

    def extendMarkdown(self, md):
        self.md = md
        md.thumbnail = None
        md.registerExtension(self)
        # Both run after 'inline' (20) has produced links and images, and
        # the embeds go first so that swallowed links aren't searched.
        md.treeprocessors.register(EmbedTreeprocessor(md), 'notes_embed', 15)
        md.treeprocessors.register(ThumbnailTreeprocessor(md), 'notes_thumbnail', 14)

    def reset(self):
        self.md.thumbnail = None


def make_markdown():
    return markdown.Markdown(
        extensions=[
            'fenced_code',  # ``` code fences
            'sane_lists',  # various list improvements, esp. start="" attr
            NotesExtension(),
        ],
        output_format='html5',
    )


def render_markdown(md, content_raw):
    """
    Render post content, returning (html, thumbnail address or None).
    """
    md.reset()
    content_html = md.convert(content_raw)
    return (content_html, md.thumbnail)


#### Loading


re_slug = re.compile(r'^[a-z0-9-]+$')
re_date = re.compile(r'^[0-9]{4}-[0-9]{2}-[0-9]{2}$')

meta_keys_known = {'title', 'date', 'summary', 'tags', 'href'}


def list_content_files(content_dir):
    """
    All Markdown source files in the content directory, sorted by name.
    """
    if not path.isdir(content_dir):
        raise BuildError(f"Content directory not found: {content_dir}")
    try:
        filenames = sorted(os.listdir(content_dir))
    except OSError as e:
        raise BuildError(f"Could not list content directory {content_dir}: {e}") from e
    for filename in filenames:
        file_path = path.join(content_dir, filename)
        if filename.endswith('.md') and path.isfile(file_path):
            yield file_path


def slug_for_file(file_path):
    slug = path.basename(file_path)[:-len('.md')]
    if not re_slug.match(slug):
        raise BuildError(
            f"Bad file name {path.basename(file_path)}: "
            "slug may only contain lowercase letters, digits, and hyphens"
        )
    return slug


def is_valid_date(value):
    """True for a YYYY-MM-DD string naming a real calendar date."""
    if not isinstance(value, str) or not re_date.match(value):
        return False
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_tags(tags):
    """
    Trimmed, non-empty, de-duplicated tags in first-seen order. Anything
    other than a list of strings counts as no tags.
    """
    if not isinstance(tags, list):
        return []
    seen = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def build_record(slug, meta, image, config):
    """
    Post metadata record from raw front matter, with defaults filled in.
    Key order here is the key order of posts.json.
    """
    title = str_field(meta, 'title').strip() or config['default_title']

    date = meta.get('date')
    if not is_valid_date(date):
        if date not in (None, ''):
            log(f"WARN: Ignoring malformed date in post {slug}: {date!r}")
        date = ''

    record = {
        'slug': slug,
        'title': title,
        'date': date,
        'summary': str_field(meta, 'summary').strip(),
        'tags': normalize_tags(meta.get('tags')),
        'image': image or '',
    }
    if href := str_field(meta, 'href').strip():
        record['href'] = href
    return record


def load_post(file_path, md, config):
    """
    Given the path to a content file, parse and render it, returning a
    dict of:

    - meta: Post metadata record (what goes in posts.json)
    - content_html: Rendered body
    - source_path: Where it was loaded from
    """
    slug = slug_for_file(file_path)
    (meta, content_raw) = read_front_matter(file_path)

    unknown_keys = meta.keys() - meta_keys_known
    if unknown_keys:
        log(f"WARN: Unexpected front-matter keys in {path.basename(file_path)}: {unknown_keys}")

    content_html, image = render_markdown(md, content_raw)
    return {
        'meta': build_record(slug, meta, image, config),
        'content_html': content_html,
        'source_path': file_path,
    }


def load_posts(config):
    """Load every post in the content directory, in file name order."""
    md = make_markdown()
    return [load_post(fp, md, config) for fp in list_content_files(config['content_dir'])]


def check_unique_slugs(posts):
    """Raise if two posts would be written to the same page."""
    seen = {}
    for post in posts:
        slug = post['meta']['slug']
        if slug in seen:
            raise BuildError(
                f"Duplicate slug {slug!r}: {seen[slug]} and {post.get('source_path', '?')}"
            )
        seen[slug] = post.get('source_path', '?')


def sort_posts(posts):
    """
    Return posts newest first, ties (including undated posts, which
    go last) broken by slug ascending.
    """
    by_slug = sorted(posts, key=lambda p: str_field(p['meta'], 'slug'))
    # Stable sort keeps slug order within each date
    return sorted(by_slug, key=lambda p: str_field(p['meta'], 'date'), reverse=True)


#### Metadata


def generate_posts_json(posts_desc):
    """posts.json: the metadata records, pretty-printed."""
    records = [post['meta'] for post in posts_desc]
    return json.dumps(records, indent=2, ensure_ascii=False) + '\n'


def listing_entry(meta, config):
    slug = str_field(meta, 'slug')
    date = str_field(meta, 'date')
    tags = meta.get('tags')
    return {
        'slug': slug,
        'title': meta.get('title'),
        'date': date,
        'summary': str_field(meta, 'summary'),
        'tags': tags if isinstance(tags, list) else [],
        'image': str_field(meta, 'image'),
        'href': str_field(meta, 'href') or f"{slug}.html",
        'year': date[:4],
        'yearMonth': date[:7],
        'path': f"{config['url_prefix']}/{slug}.html",
    }


def generate_posts_js(posts_desc, config):
    """
    posts.js: the listing as a script that assigns it to a global, so
    pages can load it with a plain script tag.
    """
    entries = [listing_entry(post['meta'], config) for post in posts_desc]
    literal = json.dumps(entries, indent=2, ensure_ascii=False)
    return f"(function(){{\n  window.{config['js_global']} = {literal};\n}})();\n"


#### Pages


page_tags = {'TITLE', 'DATE', 'SUMMARY', 'SLUG', 'CONTENT'}


def read_template(template_path):
    try:
        with open(template_path, 'r', encoding='utf-8') as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise BuildError(f"Template missing: {template_path} ({e})") from e


def replace_template_tags(template, replacements):
    """
    Replace each ``{{NAME}}`` with ``replacements[NAME]``, all in one pass
    so that substituted values are never themselves scanned for tags.
    Unknown tags are left alone.
    """
    def process_tag(m):
        if m.group(1) in replacements:
            return replacements[m.group(1)]
        log(f"WARN: Found unrecognized template tag '{m.group(0)}'")
        return m.group(0)

    return re.sub(r'\{\{([A-Z_]+)\}\}', process_tag, template)


def generate_post_page(post, template):
    meta = post['meta']
    return replace_template_tags(template, {
        'TITLE': html.escape(str_field(meta, 'title')),
        'DATE': html.escape(str_field(meta, 'date')),
        'SUMMARY': html.escape(str_field(meta, 'summary')),
        'SLUG': html.escape(str_field(meta, 'slug')),
        # Already HTML
        'CONTENT': post['content_html'],
    })


#### Command: rebuild


def rebuild(config):
    """
    Regenerate posts.json, posts.js, and every post page from the
    content directory. Returns the posts, newest first.
    """
    # Nothing gets written unless every input is readable.
    template = read_template(config['template_path'])
    posts = load_posts(config)
    check_unique_slugs(posts)
    posts_desc = sort_posts(posts)
    del posts

    for artifact_path in (config['posts_json_path'], config['posts_js_path']):
        os.makedirs(path.dirname(artifact_path), exist_ok=True)
    write_if_changed(config['posts_json_path'], generate_posts_json(posts_desc))
    write_if_changed(config['posts_js_path'], generate_posts_js(posts_desc, config))

    os.makedirs(config['output_dir'], exist_ok=True)
    for post in posts_desc:
        write_if_changed(
            path.join(config['output_dir'], f"{post['meta']['slug']}.html"),
            generate_post_page(post, template),
        )

    return posts_desc


def run_rebuild(config):
    """Rebuild and report, exiting on failure."""
    try:
        posts_desc = rebuild(config)
    except (BuildError, OSError) as e:
        log(f"ERROR: {e}")
        sys.exit(1)
    log("INFO: Rebuilt post metadata and pages")
    log(f"- Metadata: {config['posts_json_path']}")
    log(f"- Listing: {config['posts_js_path']}")
    log(f"- Pages: {config['output_dir']}")
    log(f"INFO: Processed {len(posts_desc)} posts")


@cli.command(name='rebuild')
@click.pass_obj
def cmd_rebuild(config):
    """Regenerate the post index and all post pages."""
    run_rebuild(config)


#### Command: new


new_post_summary = "Summarize the post in a sentence or two."

new_post_content = """Write the post here.
"""


def today(config):
    tz = dateutil.tz.gettz(config['timezone'])
    if tz is None:
        log(f"WARN: Unknown timezone {config['timezone']!r}, using local time")
    return datetime.datetime.now(tz).date().isoformat()


def split_tag_options(values):
    """Tags from repeated, comma-separated options."""
    return normalize_tags([tag for value in values for tag in value.split(',')])


@cli.command(name='new')
@click.argument('slug')
@click.argument('title_words', nargs=-1, required=True)
@click.option('--date', 'date', default=None, help="YYYY-MM-DD (default: today)")
@click.option('--summary', default=None)
@click.option('--tag', '--tags', 'tags', multiple=True, help="Comma-separated, repeatable")
@click.pass_obj
def cmd_new(config, slug, title_words, date, summary, tags):
    """
    Create a new post source file, then rebuild.
    """
    title = ' '.join(title_words).strip()
    if not title:
        log("ERROR: Title must not be empty")
        sys.exit(1)
    if not re_slug.match(slug):
        log("ERROR: Slug may only contain lowercase letters, digits, and hyphens")
        sys.exit(1)
    if date is None:
        date = today(config)
    if not is_valid_date(date):
        log(f"ERROR: Date must be a real date in YYYY-MM-DD form: {date!r}")
        sys.exit(1)

    post_path = path.join(config['content_dir'], f"{slug}.md")
    page_path = path.join(config['output_dir'], f"{slug}.html")
    for existing in (post_path, page_path):
        if path.exists(existing):
            log(f"ERROR: Path already exists for that slug: {existing}")
            sys.exit(1)
    if not path.isfile(config['template_path']):
        log(f"ERROR: Template missing: {config['template_path']}")
        sys.exit(1)

    meta = {
        'title': title,
        'date': date,
        'summary': (summary if summary is not None else new_post_summary).strip(),
        'tags': split_tag_options(tags),
    }
    os.makedirs(config['content_dir'], exist_ok=True)
    compose_with_front_matter(meta, new_post_content, post_path)
    run_rebuild(config)
    print(post_path)  # to stdout


#### Command: normalize


def normalize_file(file_path):
    """Just split a file and write it back again."""
    (meta, content_raw) = read_front_matter(file_path)
    compose_with_front_matter(meta, content_raw, file_path)


@cli.command(name='normalize')
@click.pass_obj
def cmd_normalize(config):
    """
    Normalize the front matter of post sources.

    Makes existing files conform to standards such as sorted keys in front
    matter. This allows for automated changes to posts without causing
    spurious diffs.
    """
    try:
        for file_path in list_content_files(config['content_dir']):
            normalize_file(file_path)
    except (BuildError, OSError) as e:
        log(f"ERROR: {e}")
        sys.exit(1)


#### Command: fix-encoding


def fix_file_encoding(file_path):
    def fixer(s):
        return ftfy.fix_encoding(s) if isinstance(s, str) else s

    (meta, content_raw) = read_front_matter(file_path)

    update_value(meta, 'title', fixer)
    update_value(meta, 'summary', fixer)
    update_value(meta, 'tags', lambda tags: [fixer(t) for t in tags] if isinstance(tags, list) else tags)
    content_raw = fixer(content_raw)

    compose_with_front_matter(meta, content_raw, file_path)


@cli.command(name='fix-encoding')
@click.pass_obj
def cmd_fix_encoding(config):
    """
    Fix encoding issues (mojibake) in post sources.

    Mostly needed after importing posts that went through the wrong
    character set somewhere along the way.
    """
    try:
        for file_path in list_content_files(config['content_dir']):
            fix_file_encoding(file_path)
    except (BuildError, OSError) as e:
        log(f"ERROR: {e}")
        sys.exit(1)


#### Main


if __name__ == '__main__':
    cli()
