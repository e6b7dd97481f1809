from ..deployer import task
from ..deployer.utils import _get, release_path


@task(name="amber:rebuild")
def rebuild(ctx):
    """Rebuild the static site inside the new release."""
    binary = _get(ctx.params, "amber", "binary", default="amber")
    with ctx.within(release_path(ctx.params)):
        ctx.execute(binary, "rebuild")
