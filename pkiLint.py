#!/usr/bin/python3
"""Run a collection of external x509 certificate linters against one certificate
and report a combined result. Exit status is 0 when every linter is clean."""

import argparse, OpenSSL, sys, os, re, glob, shutil, subprocess, tempfile, collections
import dns.name, dns.exception

OID_REGEX = re.compile(r'^([1-9][0-9]{0,8}|0)(\.([1-9][0-9]{0,8}|0)){5,16}$')
HOST_REGEX = re.compile(r'^(([a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9\-]*[a-zA-Z0-9])\.)*([A-Za-z0-9]|[A-Za-z0-9][A-Za-z0-9\-]*[A-Za-z0-9])$')
ZLINT_RESULT_REGEX = re.compile(r'"result":\s"(info|warn|error|fatal)"', re.IGNORECASE)

ROOT, INTERMEDIATE, SUBSCRIBER = "root", "intermediate", "subscriber"

lintRequest = collections.namedtuple("lintRequest", [ "cert", "mode", "chain", "evPolicy", "evHost", "verbosity", "lintsDir", "color" ])
lintResult = collections.namedtuple("lintResult", [ "name", "output", "outcome" ])

class lintOutcome:
    """Classification of a single linter run."""
    CLEAN = "clean"
    FINDINGS = "findings"
    EXECUTION_ERROR = "execution error"

class certificateLoadError(Exception):
    pass

def verbosePrint(request, msg):
    if request.verbosity > 0:
        print(msg, file=sys.stderr)

def colorize(text, color, enabled):
    if not enabled:
        return text
    return "\033[" + color + "m" + text + "\033[0m"

################################################################################
######  Argument validation
################################################################################

class friendlyArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print("ERROR: " + message, file=sys.stderr)
        self.exit(1, "Aborting script...\n")

class singleUseAction(argparse.Action):
    """Store an option value, refusing to overwrite one given earlier."""
    messages = {
        "chain": "Cannot specify multiple chain files.",
        "evPolicy": "Cannot specify multiple EV policies.",
        "evHost": "Cannot specify multiple hostnames.",
    }

    def __call__(self, parser, namespace, values, option_string=None):
        if getattr(namespace, self.dest) is not None:
            parser.error(self.messages.get(self.dest, "Cannot specify " + option_string + " more than once."))
        setattr(namespace, self.dest, values)

class roleAction(argparse.Action):
    """Store the certificate role. The exclusive group rejects two different
    roles, this rejects the same role given twice."""

    def __init__(self, option_strings, dest, const=None, **kwargs):
        super().__init__(option_strings, dest, nargs=0, const=const, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        if getattr(namespace, self.dest) is not None:
            parser.error("Cannot specify conflicting options.")
        setattr(namespace, self.dest, self.const)

def certfile(arg):
    if not os.path.exists(arg):
        raise argparse.ArgumentTypeError("File does not exist: '%s'." % arg)
    if not os.path.isfile(arg):
        raise argparse.ArgumentTypeError("Not a regular file: '%s'." % arg)
    if os.path.getsize(arg) == 0:
        raise argparse.ArgumentTypeError("File is empty: '%s'." % arg)
    return arg

def oid(arg):
    if not OID_REGEX.match(arg):
        raise argparse.ArgumentTypeError("Argument is not a valid object identifier: '%s'" % arg)
    return arg

def hostname(arg):
    """DNS label syntax from the regex, label and name lengths from dnspython"""
    if not HOST_REGEX.match(arg):
        raise argparse.ArgumentTypeError("Invalid hostname: '%s'" % arg)
    try:
        dns.name.from_text(arg)
    except dns.exception.DNSException as e:
        raise argparse.ArgumentTypeError("Invalid hostname: '%s' (%s)" % (arg, e))
    return arg

def defaultLintsDir():
    return os.environ.get("PKI_LINT_DIR") or os.path.join(os.path.dirname(os.path.realpath(__file__)), "lints")

def buildParser():
    parser = friendlyArgumentParser(prog="pki-lint",
            description="Performs various linting tests against the specified X.509 certificate.")
    parser.add_argument("certificate", type=certfile, help="The certificate (in PEM format) to lint.")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("-r", "--root", dest="mode", action=roleAction, const=ROOT, help="Certificate is a root CA.")
    mode.add_argument("-i", "--intermediate", dest="mode", action=roleAction, const=INTERMEDIATE, help="Certificate is an Intermediate CA.")
    mode.add_argument("-s", "--subscriber", dest="mode", action=roleAction, const=SUBSCRIBER, help="Certificate is for an end-entity.")
    parser.add_argument("-c", "--chain", metavar="file", type=certfile, action=singleUseAction, help="Specifies a CA chain file to use.")
    parser.add_argument("-e", "--ev-policy", metavar="oid", dest="evPolicy", type=oid, action=singleUseAction, help="Specifies an OID to test for EV compliance.")
    parser.add_argument("-n", "--ev-host", metavar="name", dest="evHost", type=hostname, action=singleUseAction, help="Specifies the hostname for EV testing.")
    parser.add_argument("-v", "--verbose", dest="verbosity", action="count", default=0, help="Make the script more verbose.")
    parser.add_argument("--lints-dir", metavar="path", dest="lintsDir", default=defaultLintsDir(),
            help="Directory holding the built lints. Defaults to %(default)s.")
    parser.add_argument("--no-color", dest="noColor", action="store_true", help="Disable colored output.")
    return parser

def parseArgs(parser, argv=None):
    """Parse and cross-validate the command line into a lintRequest."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        parser.print_help(sys.stderr)
        parser.exit(1, "Aborting script...\n")
    args = parser.parse_args(argv)
    if args.evPolicy and not args.chain:
        parser.error("Must supply CA chain for EV policy testing.")
    if args.evPolicy and not args.evHost:
        parser.error("Must supply hostname for EV policy testing.")
    return lintRequest(cert=args.certificate, mode=args.mode, chain=args.chain,
            evPolicy=args.evPolicy, evHost=args.evHost, verbosity=args.verbosity,
            lintsDir=args.lintsDir, color=not args.noColor and sys.stdout.isatty())

################################################################################
######  Format normalization
################################################################################

def pullCertsFromText(text):
    """Split a PEM bundle into a list of PEM strings, one per certificate"""
    certs = []
    certFlag = False
    stringAccumulator = ''
    for line in text.splitlines():
        line = line.strip()
        if line == "-----BEGIN CERTIFICATE-----":
            certFlag = True
        if certFlag:
            stringAccumulator += line + "\n"
        if line == "-----END CERTIFICATE-----" and certFlag:
            certFlag = False
            certs.append(stringAccumulator)
            stringAccumulator = ''
    return certs

def loadCertificate(data, source):
    """Load a pyopenssl x509 object from PEM or DER bytes."""
    filetype = OpenSSL.crypto.FILETYPE_PEM if b"-----BEGIN" in data else OpenSSL.crypto.FILETYPE_ASN1
    try:
        return OpenSSL.crypto.load_certificate(filetype, data)
    except OpenSSL.crypto.Error as e:
        raise certificateLoadError("Unable to load certificate from '%s': %s" % (source, e))

class normalizedCertificate:
    """PEM, DER and chain PEM renditions of a certificate in a private
    temporary directory. Use as a context manager, the directory is removed
    on exit whether or not linting succeeded."""

    def __init__(self, certPath, chainPath=None, verbose=False):
        self._certPath = certPath
        self._chainPath = chainPath
        self._verbose = verbose
        self.tmpDir = None
        self.pem = None
        self.der = None
        self.chainPem = None

    def __enter__(self):
        self.tmpDir = tempfile.mkdtemp(prefix="pki-lint-")
        try:
            self.__write()
        except BaseException:
            self.cleanup()
            raise
        return self

    def __exit__(self, excType, excValue, traceback):
        self.cleanup()
        return False

    def __write(self):
        with open(self._certPath, 'rb') as certFile:
            x509 = loadCertificate(certFile.read(), self._certPath)
        baseName = os.path.basename(self._certPath)
        self.pem = os.path.join(self.tmpDir, baseName + ".pem")
        self.der = os.path.join(self.tmpDir, baseName + ".der")
        self.chainPem = os.path.join(self.tmpDir, baseName + ".chain.pem")
        pemBytes = OpenSSL.crypto.dump_certificate(OpenSSL.crypto.FILETYPE_PEM, x509)
        self.__writeFile(self.pem, pemBytes)
        self.__writeFile(self.der, OpenSSL.crypto.dump_certificate(OpenSSL.crypto.FILETYPE_ASN1, x509))
        chainBytes = pemBytes
        if self._chainPath:
            for caX509 in self.__loadChain():
                chainBytes += OpenSSL.crypto.dump_certificate(OpenSSL.crypto.FILETYPE_PEM, caX509)
        self.__writeFile(self.chainPem, chainBytes)

    def __loadChain(self):
        """A PEM bundle, or a single DER certificate"""
        with open(self._chainPath, 'rb') as chainFile:
            data = chainFile.read()
        if b"-----BEGIN" not in data:
            return [loadCertificate(data, self._chainPath)]
        chainCerts = pullCertsFromText(data.decode("utf-8", errors="replace"))
        if not chainCerts:
            raise certificateLoadError("No certificates found in chain file: '%s'" % self._chainPath)
        return [loadCertificate(chainCert.encode(), self._chainPath) for chainCert in chainCerts]

    def __writeFile(self, path, data):
        with open(path, 'wb') as outFile:
            outFile.write(data)
        if self._verbose:
            print("Wrote " + path, file=sys.stderr)

    def cleanup(self):
        if self.tmpDir is not None:
            shutil.rmtree(self.tmpDir, ignore_errors=True)
            self.tmpDir = None

################################################################################
######  Lint invocation
################################################################################

def grepContext(text, regex, context=1):
    """Lines of text matching regex plus context lines around them, with
    non adjacent groups separated by '--' the way grep does it."""
    lines = text.splitlines()
    keep = set()
    for idx, line in enumerate(lines):
        if regex.search(line):
            keep.update(range(max(0, idx - context), min(len(lines), idx + context + 1)))
    selected = []
    previous = None
    for idx in sorted(keep):
        if previous is not None and idx > previous + 1:
            selected.append("--")
        selected.append(lines[idx])
        previous = idx
    return "\n".join(selected)

def filterZlintOutput(output):
    return grepContext(output, ZLINT_RESULT_REGEX)

class x509lints:
    """Runs the external linters against a normalized certificate.
    All paths are relative to the lints directory of the request."""
    X509LINT_BINS = {ROOT: "x509lint/x509lint-root", INTERMEDIATE: "x509lint/x509lint-int", SUBSCRIBER: "x509lint/x509lint-sub"}
    ZLINT_BIN = "bin/zlint"
    AWS_CERTLINT_DIR = "aws-certlint"
    AWS_CERTLINT_BIN = "aws-certlint/bin/certlint"
    GS_CERTLINT_DIR = "gs-certlint"
    GS_CERTLINT_BIN = "gs-certlint/gs-certlint"
    EV_CHECKER_BIN = "ev-checker/ev-checker"
    GOLANG_LINTS = "golang/*.go"

    def __init__(self, request, normalized):
        self._request = request
        self._normalized = normalized

    def _path(self, relPath):
        return os.path.join(self._request.lintsDir, relPath)

    def _run(self, name, command, cwd=None, outputFilter=None):
        """Run one linter and classify it. Exit codes only count when the
        linter printed nothing. Undecodable bytes are replaced, and stderr
        is passed on to our own stderr unless it becomes the error report."""
        verbosePrint(self._request, "Running " + name + ": " + " ".join(command) + (" (in " + cwd + ")" if cwd else ""))
        try:
            proc = subprocess.run(command, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                    encoding="utf-8", errors="replace")
        except OSError as e:
            return lintResult(name, str(e), lintOutcome.EXECUTION_ERROR)
        output = proc.stdout or ""
        errors = proc.stderr or ""
        if outputFilter is not None:
            output = outputFilter(output)
        output = output.rstrip("\n")
        if not output and proc.returncode != 0:
            return lintResult(name, errors.rstrip("\n") or "exit status " + str(proc.returncode), lintOutcome.EXECUTION_ERROR)
        if errors:
            sys.stderr.write(errors if errors.endswith("\n") else errors + "\n")
        if output:
            return lintResult(name, output, lintOutcome.FINDINGS)
        return lintResult(name, "", lintOutcome.CLEAN)

    def awsCertlint(self):
        return self._run("aws-certlint", ["ruby", "-I", "lib:ext", "bin/certlint", self._normalized.der],
                cwd=self._path(self.AWS_CERTLINT_DIR))

    def x509lint(self):
        return self._run("x509lint", [self._path(self.X509LINT_BINS[self._request.mode]), self._normalized.pem])

    def zlint(self):
        return self._run("zlint", [self._path(self.ZLINT_BIN), "-pretty", self._normalized.pem],
                outputFilter=filterZlintOutput)

    def golangLints(self):
        results = []
        for lintFile in sorted(glob.glob(self._path(self.GOLANG_LINTS))):
            name = "golang/" + os.path.splitext(os.path.basename(lintFile))[0]
            results.append(self._run(name, ["go", "run", lintFile, self._normalized.pem]))
        return results

    def gsCertlint(self):
        command = ["./gs-certlint"]
        if self._request.chain:
            command += ["-issuer", os.path.abspath(self._request.chain)]
        command += ["-cert", self._normalized.pem]
        return self._run("gs-certlint", command, cwd=self._path(self.GS_CERTLINT_DIR))

    def runAll(self):
        """Every linter in the fixed order, one result each"""
        results = [self.awsCertlint(), self.x509lint(), self.zlint()]
        results.extend(self.golangLints())
        results.append(self.gsCertlint())
        return results

    def evCheck(self):
        return self._run("ev-checker", [self._path(self.EV_CHECKER_BIN), "-c", self._normalized.chainPem,
                "-o", self._request.evPolicy, "-h", self._request.evHost])

def checkPrerequisites(parser, request):
    """Abort with a usage error when a linter has not been built."""
    for tool in ("ruby", "go"):
        if shutil.which(tool) is None:
            parser.error("You need to install " + tool + ".")
    required = [x509lints.X509LINT_BINS[request.mode], x509lints.ZLINT_BIN,
            x509lints.AWS_CERTLINT_BIN, x509lints.GS_CERTLINT_BIN]
    if request.evPolicy:
        required.append(x509lints.EV_CHECKER_BIN)
    for relPath in required:
        if not os.path.exists(os.path.join(request.lintsDir, relPath)):
            parser.error("Missing required binary (did you build it?): lints/" + relPath)

################################################################################
######  Reporting
################################################################################

def printReport(request, results):
    """Print one section per linter and return the exit status."""
    exitCode = 0
    print("Checking certificate '" + request.cert + "' ...")
    for result in results:
        if result.outcome == lintOutcome.CLEAN:
            print(colorize(result.name + ": certificate OK", "32", request.color))
            continue
        exitCode = 1
        print()
        if result.outcome == lintOutcome.EXECUTION_ERROR:
            print(colorize(result.name + ": execution failed", "31", request.color))
        else:
            print(colorize(result.name + ":", "31", request.color))
        print(result.output)
        print()
    return exitCode

def printEvCheck(request, result):
    print()
    print(colorize("EV policy check:", "33", request.color))
    if result.outcome == lintOutcome.EXECUTION_ERROR:
        print("ev-checker execution failed: " + result.output)
    elif result.output:
        print(result.output)

def main(argv=None):
    parser = buildParser()
    request = parseArgs(parser, argv)
    checkPrerequisites(parser, request)
    try:
        with normalizedCertificate(request.cert, request.chain, request.verbosity > 0) as normalized:
            lints = x509lints(request, normalized)
            exitCode = printReport(request, lints.runAll())
            if request.evPolicy:
                printEvCheck(request, lints.evCheck())
    except certificateLoadError as e:
        parser.error(str(e))
    return exitCode

if __name__ == '__main__':
    sys.exit(main())
