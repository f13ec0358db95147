# composeengine

`composeengine` drives a multi-container application described as a `Project`
of `ServiceConfig` entries. It works against a container engine reached through
an `EngineClient`: any object that offers the engine calls the package needs
(list, inspect, create, start, stop, kill, rename and remove containers, and
manage networks, volumes and images).

## What it does

- **Model** (`composeengine.model`): `Project`, `ServiceConfig` and the
  configuration types that go with them. `service_hash` computes the
  configuration hash used to tell whether a container is out of date; it
  ignores the build settings, the pull policy and the scale.
  `convert_project(project, "json")` or `convert_project(project, "yaml")`
  renders a project as bytes with every `$` escaped as `$$`; any other format
  raises `ValueError`.
- **Errors** (`composeengine.errors`): `NotFoundError`, `ComposeError` with its
  `FailureCategory`, and `is_not_found` to look for a `NotFoundError` in a
  chain of causes.
- **Filters** (`composeengine.filters`): label filters such as
  `project_filter` and `service_filter`, as `(key, value)` pairs.
- **Dependency order** (`composeengine.dependencies`): `Graph.from_services`
  builds the dependency graph and `Graph.has_cycles` reports whether it has a
  cycle. `in_dependency_order` and `in_reverse_dependency_order` call a
  function once per service, in threads. A service is visited only after
  everything it depends on has been visited, or, in reverse order, after
  everything that depends on it. A cycle raises `ValueError`.
- **Containers** (`composeengine.containers`): the `Containers` list with
  predicates such as `is_service`, `is_not_one_off` and `indexed`.
  `get_containers` lists a project's containers, `project_from_name` rebuilds
  a project from the containers that exist, and `actual_volumes` and
  `actual_networks` read the project's volumes and networks.
- **Images** (`composeengine.images`): `list_images` returns an
  `ImageSummary` for each container of the project.
- **Create** (`composeengine.create`, `composeengine.mounts`,
  `composeengine.resources`): image names, labels, mounts, resource limits,
  restart policies, port bindings and security options. `get_create_options`
  gathers them into a `ContainerCreateOptions`. `ensure_network` and
  `ensure_volume` create networks and volumes when they are missing.
- **Convergence** (`composeengine.convergence`): `Convergence.apply` brings
  each service to its expected scale, in dependency order. It recreates
  containers whose configuration or image changed (see `RecreatePolicy`),
  starts stopped ones, and scales up or down.
- **Startup and teardown** (`composeengine.startup`, `composeengine.down`,
  `composeengine.kill`): `wait_dependencies` polls until dependency conditions
  are met (`service_healthy`, `running_or_healthy`,
  `service_completed_successfully`; `service_started` needs no wait).
  `start_service` starts a service's stopped containers. `down` removes
  containers, networks and, if `DownOptions` asks for it, volumes, images and
  orphan containers. `kill` sends a signal to running containers.

## Example

```python
from composeengine.model import Project, ServiceConfig, ServiceDependency
from composeengine.dependencies import in_dependency_order

project = Project(
    name="shop",
    services=[
        ServiceConfig(name="web", depends_on={"db": ServiceDependency()}),
        ServiceConfig(name="db"),
    ],
)

started = []
in_dependency_order(project, started.append)
print(started)  # ['db', 'web']
```

Progress is reported through an `EventWriter` (`composeengine.engine`).
`ListWriter` keeps every `Event` it receives, in order, which is handy in
scripts and tests. Functions that take a writer use a fresh `ListWriter` when
none is given.

## What it does not do

- There is no command-line program; the package is a library.
- There is no engine client. You supply an object that meets the
  `EngineClient` protocol.
- It does not read project files. A `Project` is built in code.
- It does not build or pull images.

## Installing

From a checkout of the package:

```
pip install .
```

Python 3.10 or newer is required. PyYAML is the only dependency.