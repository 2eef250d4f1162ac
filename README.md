# netopstate

Reconciliation states for a cluster network operator. Each state takes a
policy resource (a plain dictionary shaped like the resource's JSON),
renders the objects it needs, creates or updates them through a cluster
client, removes stale objects it owns, and reports whether everything has
become ready.

## States

- `StateOFED` (`netopstate.ofed`): the NIC driver daemon sets, one per node
  pool (OS, kernel, architecture), using a precompiled image when the driver
  image provider reports its tag and a source-built image otherwise. It also
  handles the driver toolkit image on Openshift (`driver_toolkit_image`),
  cluster-wide proxy settings
  (`handle_openshift_cluster_wide_proxy_config`), the trusted CA ConfigMap
  (`get_or_create_trusted_ca_config_map`), and certificate, repository and
  subscription mounts.
- `StateMacvlanNetwork` (`netopstate.macvlan`): a macvlan network
  attachment definition; when its target namespace changes, the old one is
  deleted and the last namespace is recorded in an annotation on the
  resource. `render_data(cr)` returns the template data.
- `StateRDMASharedDevicePlugin` (`netopstate.rdma_shared_device_plugin`):
  the RDMA shared device plugin daemon set.

Every state offers `sync(cr, catalog)`, which returns a `SyncState`
(`READY`, `NOT_READY`, `IGNORE` or `ERROR`) and raises `StateError` when it
fails, and `watch_sources()`, the kinds it should be woken up by, keyed by
kind name. `StateOFED` and `StateRDMASharedDevicePlugin` also offer
`get_manifest_objects(cr, catalog)` to render without touching the cluster.
When the part of the policy a state looks after is absent, `sync` deletes
the state's objects and returns `NOT_READY` while deletion is under way,
then `IGNORE`.

## Shared machinery

`netopstate.skel` holds `StateSkel`, the common base:

- `create_or_update_objs` labels each object for its state, stores a
  revision hash in an annotation, creates missing objects and updates those
  whose revision changed;
- `handle_stale_state_objects` and `delete_state_related_objects` delete
  labelled objects of the state that are no longer wanted, across the kinds
  listed by `supported_gvks()`;
- `merge_objects` carries the resource version, and for service accounts
  their secrets, over from the current object;
- `get_sync_state` checks that every object exists and that daemon sets are
  rolled out (`is_daemonset_ready`).

It also defines `GroupVersionKind`, `gvk_of`, `set_controller_reference`,
`container_resources_map`, `StateObjects`, the `InfoCatalog` that hands
providers to the states (`STATIC_CONFIG`, `CLUSTER_TYPE`, `NODE_INFO`,
`DOCA_DRIVER_IMAGE`), and the errors a client is expected to raise:
`ApiError`, `NotFoundError`, `AlreadyExistsError` and `NoKindMatchError`.

Helpers for driver rendering live in `netopstate.ofed_support`: `NodePool`,
`ProxyConfig`, `InitContainerConfig`, `AdditionalVolumeMounts`,
`driver_image_name`, `precompiled_tag`, `string_hash`,
`merge_with_default_envs`, `set_env_from_cluster_wide_proxy`,
`init_container_config`, `set_probes_defaults`, `cert_config_path` and
`repo_config_path`.

## What you supply

The package contains no cluster client, no manifest templates and no
providers; each state is given them:

- `client`: an object with `get(gvk, namespace, name)`, `create(obj)`,
  `update(obj)`, `delete(obj)` and `list(gvk, labels)`, raising the errors
  above;
- `renderer`: an object with `render_objects(data)` returning a list of
  object dictionaries;
- catalog providers: for cluster type, an object with `is_openshift()`; for
  node info, one with `get_node_pools(labels)` returning `NodePool`s; for
  driver images, one with `tag_exists(tag)`.

## What it does not do

It does not talk to a real cluster, watch for events, run a reconcile loop,
or ship a command-line program or templates. It is a library of states to
be driven by such a loop.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```