# whalewatch

`whalewatch` is a library for checking a Dockerfile and the container image
built from it against a ruleset written in YAML. Each rule carries a short
Python snippet, normally with an `assert`; the snippet runs in a separate
Python interpreter, and a rule whose snippet fails counts as a violation.

It also reads OCI image layout tarballs (index, manifest, config, layers and
the files in each layer), downloads images from container registries, and
keeps a SQLite cache of known base images with their packages and layer
digests.

## Installation

```
pip install .
```

`git` must be on the `PATH` to load rulesets from repositories or to push
an updated file to a repository.

## Rulesets

```yaml
name: example ruleset
rules:
  - id: few-layers
    scope: output          # output | buildtime
    category: negative     # negative | positive
    target: fs             # command | fs | os
    description: The image should have at most five layers
    instruction: |
      assert fs_util.get_layer_count() <= 5
```

Every rule needs an `id`; `scope`, `category` and `target` are lower-cased
and must be one of the values shown, otherwise `whalewatch.rules.RuleError`
is raised. A rule whose instruction has no `assert` is loaded with a
warning. A rule may also have `long_description` and `fix_instruction`.

`whalewatch.rules.load_ruleset(location)` accepts a path to a YAML file or a
git repository URL. For a repository, the first `.yaml` file at its top
level (in name order) is used. `https://` URLs are cloned directly; `http://`
URLs are refused unless `WHALE_WATCHER_ALLOW_UNSAFE=true` is set.
`load_ruleset_from_content(data)` parses YAML given as bytes or text.

## Running a ruleset

```python
from whalewatch.rules import load_ruleset
from whalewatch.validator import validate_ruleset

ruleset = load_ruleset("rules.yaml")
violations = validate_ruleset(ruleset, "out.tar", "Dockerfile", "out_docker.tar")
print(violations.checked_count, violations.violation_count, violations.fixable_count)
print(violations.build_description_markdown())
```

Rule snippets run inside a shared temporary working directory
(`whalewatch.runner.working_directory`). The Dockerfile, the OCI tarball and
the Docker tarball are hard-linked into it as `Dockerfile`, `out.tar` and
`out_docker.tar`, so they must be on the same file system as the temporary
directory.

For rules with target `fs`, the snippet finds a ready `fs_util` object
(`whalewatch.runner.fs_util.FsUtils`) loaded from `out.tar`, with:

- `get_layer_count()`
- `dir_content_count(dir_path)` – entries below a path in the top layer
- `ls_layer(dir_path, layer_index)`
- `open_file_at_layer(file_path, layer_index)` – the file's lines
- `look_for_file(path)` – index of the topmost layer holding the file, or
  `-1` if it is absent or deleted by a whiteout
- `get_installed_packages()` – packages guessed from `apt`, `apt-get`,
  `apk` and `brew` calls in the layer history

When a failing rule has a `fix_instruction`, `validate_ruleset` runs it and
marks the violation as fixed.

`config.target_list` (comma separated) limits which targets are checked;
when empty, all three are.

## Reading images

```python
from whalewatch.container.image import container_image_from_oci_tar

image = container_image_from_oci_tar("out.tar")
print(image)                      # one line per layer
print(image.get_package_list())
image.extract_to_dir("./extracted")
```

Layers (`whalewatch.container.layer.Layer`) expose their digest, the
history command that created them and a `file_system`
(`whalewatch.container.layerfs.LayerFS`) with `ls`, `has_file` and `open`.
File contents are read from the tarball on demand and the last few opened
files are kept in a small LRU cache.

## Fetching images and the base image cache

- `whalewatch.fetcher.load_tar_to_path(image, destination, fmt)` downloads
  the linux/amd64 image from its registry and writes it as an `oci` layout
  tarball or a `docker` tarball. Registries needing anonymous bearer tokens
  are supported.
- `whalewatch.fetcher.fetch_container_files()` returns the Dockerfile,
  OCI tarball and Docker tarball paths for the configured target, cloning the
  repository and downloading the image when configured to.
- `whalewatch.ingester.ingest_image(image)` downloads an image and records
  its packages and layer digests (all but the first layer) in
  `base_image_cache.db` in the cache location. It returns `False` if the
  image was already cached.
- `whalewatch.base_image_cache.new_base_image_cache()` opens that database;
  `get_image_by_digest` and `get_closest_dependency_image` look up a known
  base image.

`whalewatch.adapters.git.sync_file_to_repo_if_different(repo_url, branch,
repo_file_path, host_file_path)` clones a repository and, if the host file
differs from the one in the repository, commits it to a new `update-<time>`
branch and pushes it, returning the branch name (or `""` when unchanged).

## Configuration

`whalewatch.config.get_config()` loads settings once, from the path given
to `set_config_path`, else from `WHALE_WATCHER_CONFIG_PATH`, else from
`./config.yaml`. `reset_config()` forgets the loaded settings.

```yaml
github:
  username: whale-bot
  pat: token
target:
  repository: https://example.com/team/service.git
  branch: main
  dockerfile: Dockerfile
  image: registry.example.com/team/service:latest
  # or, instead of image, local tarballs:
  # ocipath: ./out/out.tar
  # dockerpath: ./out/out_docker.tar
base_image_cache:
  cache_location: ./cache
  base_images:
    - debian:bookworm
target_list: command,fs
log_level: 1
```

Values of the `github` and `target` sections can be overridden by
environment variables:

| Setting              | Environment variable                   |
|----------------------|----------------------------------------|
| `github.pat`         | `WHALE_WATCHER_GITHUB_PAT`             |
| `github.username`    | `WHALE_WATCHER_GITHUB_USER_NAME`       |
| `target.repository`  | `WHALE_WATCHER_TARGET_REPOSITORY_URL`  |
| `target.dockerfile`  | `WHALE_WATCHER_TARGET_DOCKERFILE_PATH` |
| `target.image`       | `WHALE_WATCHER_TARGET_IMAGE`           |
| `target.branch`      | `WHALE_WATCHER_TARGET_BRANCH`          |
| `target.ocipath`     | `WHALE_WATCHER_TARGET_OCI_PATH`        |
| `target.dockerpath`  | `WHALE_WATCHER_TARGET_DOCKER_PATH`     |

`should_interact_with_vsc()` is true when both the GitHub username and token
are set.

## What this package does not do

- It has no command-line program; everything is used from Python.
- It does not open or update pull requests on a hosting platform; it can
  only push an updated file to a new branch.
- It does not serve rendered ruleset documentation.
- It ships helpers only for the `fs` target. Rules with target `command`
  expect an importable `command_util` module (and fixes a `fix_util`
  module) that parses the Dockerfile, and rules with target `os` expect
  helpers for running commands in a container; none of these are included,
  so such rules fail and are reported as violations unless you provide the
  modules yourself.

## Running the tests

```
pip install ".[test]"
pytest
```