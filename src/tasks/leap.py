"""Links the site's ``public/code`` to the code browser's public assets."""

import posixpath

from ..deployer import task
from ..deployer.utils import _get, current_path


DEFAULT_CODE_PUBLIC = "/var/www/redmine/public"


@task(name="leap:link_to_chiliproject")
def link_to_chiliproject(ctx):
    """Point public/code at the external code browser."""
    target = _get(ctx.params, "leap", "code_public", default=DEFAULT_CODE_PUBLIC)
    link = posixpath.join(current_path(ctx.params), "public", "code")
    ctx.execute("rm", "-f", link)
    ctx.execute("ln", "-s", target, link)
