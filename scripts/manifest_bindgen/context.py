"""
Context lifecycle declarations

The configuration and context functions every compiled library exports,
plus the backend specific configuration knob.
"""

from typing import TYPE_CHECKING

from .foreign import ForeignFn
from .manifest import Knob

if TYPE_CHECKING:
    from .backend import Backend


def knob_declaration(backend: 'Backend', knob: Knob) -> list[ForeignFn]:
    """Declaration of the thread count or device selector, if any"""
    b = backend
    if knob is Knob.NUM_THREADS:
        return [ForeignFn(b.symbol('context_config_set_num_threads'))
                .arg('config', b.config_t)
                .arg('n', b.int_t)
                .returns(b.void_t)]
    if knob is Knob.DEVICE:
        return [ForeignFn(b.symbol('context_config_set_device'))
                .arg('config', b.config_t)
                .arg('device', b.string_t)
                .returns(b.void_t)]
    return []


def context_declarations(backend: 'Backend', knob: Knob) -> list[ForeignFn]:
    """Configuration and context lifecycle, in declaration order"""
    b = backend
    decls = [
        ForeignFn(b.symbol('context_config_new')).returns(b.config_t),
        ForeignFn(b.symbol('context_config_free')).arg('config', b.config_t).returns(b.void_t),
    ]
    for flag in ('debugging', 'profiling', 'logging'):
        decls.append(ForeignFn(b.symbol(f'context_config_set_{flag}'))
                     .arg('config', b.config_t)
                     .arg('flag', b.int_t)
                     .returns(b.void_t))
    decls.append(ForeignFn(b.symbol('context_config_set_cache_file'))
                 .arg('config', b.config_t)
                 .arg('path', b.string_t)
                 .returns(b.void_t))
    decls.extend(knob_declaration(b, knob))

    decls.append(ForeignFn(b.symbol('context_new')).arg('config', b.config_t).returns(b.context_t))
    decls.append(ForeignFn(b.symbol('context_free')).arg('ctx', b.context_t).returns(b.void_t))
    for name in ('sync', 'clear_caches'):
        decls.append(ForeignFn(b.symbol(f'context_{name}')).arg('ctx', b.context_t).returns(b.int_t))
    for name in ('pause_profiling', 'unpause_profiling'):
        decls.append(ForeignFn(b.symbol(f'context_{name}')).arg('ctx', b.context_t).returns(b.void_t))
    for name in ('get_error', 'report'):
        decls.append(ForeignFn(b.symbol(f'context_{name}')).arg('ctx', b.context_t).returns(b.cstring_t))
    decls.append(ForeignFn('free').arg('ptr', b.cstring_t).returns(b.void_t))
    return decls
