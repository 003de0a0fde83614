"""oslo.config options for the EVPN convergence timings.

Services that already use oslo.config can embed the orchestrator by
registering these options and building :class:`ReconcileSettings` from them.
``list_opts`` is exposed through the ``oslo.config.opts`` entry point so
``oslo-config-generator`` can emit a sample ``[evpn_reconcile]`` section.
"""

from oslo_config import cfg

from evpn_fabric.config import ReconcileSettings

GROUP_NAME = 'evpn_reconcile'

_DEFAULTS = ReconcileSettings()

evpn_reconcile_group = cfg.OptGroup(
    name=GROUP_NAME,
    title='EVPN fabric convergence options',
    help='Timed waits and retry bounds used while FRR converges.')

reconcile_opts = [
    cfg.FloatOpt('vrf_settle_interval',
                 default=_DEFAULTS.vrf_settle_interval,
                 min=0,
                 help='Seconds to wait after binding the VRF to its VNI before '
                      'activating advertise-all-vni.'),
    cfg.FloatOpt('activation_settle_interval',
                 default=_DEFAULTS.activation_settle_interval,
                 min=0,
                 help='Seconds to wait after advertise-all-vni before the VRF '
                      'route-targets are configured.'),
    cfg.FloatOpt('settle_interval',
                 default=_DEFAULTS.settle_interval,
                 min=0,
                 help='Seconds to wait for BGP routes to arrive before the '
                      'first route-target re-application.'),
    cfg.FloatOpt('retry_interval',
                 default=_DEFAULTS.retry_interval,
                 min=0,
                 help='Seconds between route-target re-applications.'),
    cfg.IntOpt('max_attempts',
               default=_DEFAULTS.max_attempts,
               min=1,
               help='Maximum number of route-target re-applications per node.'),
    cfg.FloatOpt('fleet_settle_interval',
                 default=_DEFAULTS.fleet_settle_interval,
                 min=0,
                 help='Seconds to wait once after every node has been set up.'),
    cfg.BoolOpt('poll_routes',
                default=_DEFAULTS.poll_routes,
                help='Stop re-applying route-targets as soon as BGP routes '
                     'show up in the VRF.'),
]


def register_opts(conf=cfg.CONF):
    """Register the ``[evpn_reconcile]`` options on ``conf``."""
    conf.register_group(evpn_reconcile_group)
    conf.register_opts(reconcile_opts, group=evpn_reconcile_group)


def list_opts():
    return [(evpn_reconcile_group, reconcile_opts)]


def settings_from_conf(conf=cfg.CONF):
    """Build :class:`ReconcileSettings` from registered options."""
    group = conf[GROUP_NAME]
    return ReconcileSettings(
        vrf_settle_interval=group.vrf_settle_interval,
        activation_settle_interval=group.activation_settle_interval,
        settle_interval=group.settle_interval,
        retry_interval=group.retry_interval,
        max_attempts=group.max_attempts,
        fleet_settle_interval=group.fleet_settle_interval,
        poll_routes=group.poll_routes,
    )


def load_oslo_settings(config_file):
    """Read the ``[evpn_reconcile]`` section of an oslo-style INI file."""
    conf = cfg.ConfigOpts()
    register_opts(conf)
    conf(args=[], project='evpn-fabric',
         default_config_files=[str(config_file)], default_config_dirs=[])
    return settings_from_conf(conf)
