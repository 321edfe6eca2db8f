"""Redis Lua scripts for atomic quota enforcement.

These scripts run the whole read-evaluate-write sequence inside Redis so
that concurrent callers cannot both pass a ceiling that only one of them fits
under.
"""

# Guarded multi-counter increment.
# KEYS[i] is a counter, ARGV[3i-2] its delta, ARGV[3i-1] its TTL and ARGV[3i]
# its ceiling. Guards are evaluated in KEYS order; the first one whose
# current + delta exceeds its ceiling rejects the whole call and nothing is
# written. Missing or non-numeric counters read as 0 for the guards, but a
# non-numeric counter fails the call with an error before any INCRBY runs.
# Returns {violation, current_1, ..., current_n} where violation is the
# 1-based index of the rejecting guard, or 0 when every counter was advanced.
# The current values are always the pre-increment reads.
CHECK_AND_INCREMENT_SCRIPT = """
    local count = #KEYS
    local current = {}
    local invalid = nil

    for i = 1, count do
        local raw = redis.call('GET', KEYS[i])
        current[i] = tonumber(raw) or 0
        if raw and not tonumber(raw) and not invalid then
            invalid = KEYS[i]
        end
    end

    for i = 1, count do
        local delta = tonumber(ARGV[3 * i - 2])
        local ceiling = tonumber(ARGV[3 * i])
        if current[i] + delta > ceiling then
            return {i, unpack(current)}
        end
    end

    if invalid then
        return redis.error_reply('ERR value at ' .. invalid .. ' is not an integer')
    end

    for i = 1, count do
        redis.call('INCRBY', KEYS[i], tonumber(ARGV[3 * i - 2]))
        redis.call('EXPIRE', KEYS[i], tonumber(ARGV[3 * i - 1]))
    end

    return {0, unpack(current)}
"""
