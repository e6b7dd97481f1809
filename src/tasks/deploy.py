"""Release directory and ``current`` symlink steps of the lifecycle.

Checkout into the release directory and pruning of old releases are left to
the site; these tasks only give each run its own directory and publish it.
"""

from ..deployer import task
from ..deployer.utils import current_path, release_path


@task(name="deploy:updating")
def create_release(ctx):
    """Create the release directory for this run."""
    ctx.execute("mkdir", "-p", release_path(ctx.params))


@task(name="deploy:publishing")
def publish_release(ctx):
    """Point current at the new release."""
    ctx.execute("ln", "-sfn", release_path(ctx.params), current_path(ctx.params))
